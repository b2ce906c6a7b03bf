"""
interaqt Schema - Entities, Relations, Dictionaries and Interactions
====================================================================

Declarations are plain objects. They are grouped into an explicit
:class:`SchemaRegistry` that is handed to the controller; nothing is registered
globally, so two controllers in the same process never see each other's
records.

Example:
    User = Entity("User", [Property("name")])
    Post = Entity("Post", [Property("title")])
    UserPosts = Relation(User, "posts", Post, "owner", "1:n")

    schema = SchemaRegistry(entities=[User, Post], relations=[UserPosts])
    schema.relation_for("User", "posts")      # (UserPosts, True)

A relation exposes one attribute on each side: ``source_property`` on the
source entity and ``target_property`` on the target entity. For ``1:n`` the
source side is a collection (one user, many posts) and the target side a
single record. Relation records themselves carry ``source`` and ``target``.
"""

import copy
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

INTERACTION_RECORD = "_Interaction_"
DICTIONARY_RECORD = "_Dictionary_"
HARD_DELETION_PROPERTY = "_isDeleted_"

RELATION_TYPES = ("1:1", "1:n", "n:1", "n:n")


@dataclass(eq=False)
class Property:
    """A typed attribute. ``default_value`` may be a value or a zero-arg factory."""

    name: str
    type: str = "string"
    default_value: Any = None
    computation: Any = None

    def get_default(self) -> Any:
        if callable(self.default_value):
            return self.default_value()
        return copy.deepcopy(self.default_value)

    def __repr__(self) -> str:
        return f"Property({self.name!r})"


@dataclass(eq=False)
class Entity:
    name: str
    properties: List[Property] = field(default_factory=list)
    computation: Any = None

    def get_property(self, name: str) -> Optional[Property]:
        for prop in self.properties:
            if prop.name == name:
                return prop
        return None

    def add_property(self, prop: Property) -> Property:
        if self.get_property(prop.name) is not None:
            raise ValueError(f"Property '{prop.name}' already declared on '{self.name}'")
        self.properties.append(prop)
        return prop

    def __repr__(self) -> str:
        return f"Entity({self.name!r})"


def _record_name(value: Union[str, Entity, "Relation"]) -> str:
    return value if isinstance(value, str) else value.name


@dataclass(eq=False)
class Relation:
    """
    A typed link between two entities (or between an entity and a relation).

    Relation records carry ``source`` and ``target`` references plus their own
    ``properties``, and may have their own computation like any entity.
    """

    source: Union[str, Entity, "Relation"]
    source_property: str
    target: Union[str, Entity, "Relation"]
    target_property: str
    type: str = "n:n"
    name: Optional[str] = None
    properties: List[Property] = field(default_factory=list)
    computation: Any = None

    def __post_init__(self):
        if self.type not in RELATION_TYPES:
            raise ValueError(f"Unknown relation type {self.type!r}, expected one of {RELATION_TYPES}")
        self.source = _record_name(self.source)
        self.target = _record_name(self.target)
        if self.name is None:
            self.name = f"{self.source}_{self.source_property}_{self.target_property}_{self.target}"

    @property
    def source_is_collection(self) -> bool:
        """The attribute on the source entity holds many targets."""
        return self.type.split(":")[1] == "n"

    @property
    def target_is_collection(self) -> bool:
        """The attribute on the target entity holds many sources."""
        return self.type.split(":")[0] == "n"

    def get_property(self, name: str) -> Optional[Property]:
        for prop in self.properties:
            if prop.name == name:
                return prop
        return None

    def add_property(self, prop: Property) -> Property:
        if self.get_property(prop.name) is not None:
            raise ValueError(f"Property '{prop.name}' already declared on '{self.name}'")
        self.properties.append(prop)
        return prop

    def __repr__(self) -> str:
        return f"Relation({self.name!r}, {self.type})"


@dataclass(eq=False)
class Dictionary:
    """A named global value, stored under the ``state`` concept."""

    name: str
    type: str = "number"
    default_value: Any = None
    computation: Any = None

    def get_default(self) -> Any:
        if callable(self.default_value):
            return self.default_value()
        return copy.deepcopy(self.default_value)

    def __repr__(self) -> str:
        return f"Dictionary({self.name!r})"


@dataclass(eq=False)
class Interaction:
    """
    A named user-facing operation.

    ``guard(event_args)`` rejects the call by returning False or raising.
    ``resolve(controller, event_args)`` performs extra work and returns the
    response data. Both may be coroutine functions.
    """

    name: str
    guard: Optional[Callable[..., Any]] = None
    resolve: Optional[Callable[..., Any]] = None
    uuid: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __repr__(self) -> str:
        return f"Interaction({self.name!r})"


Record = Union[Entity, Relation]


def _interaction_event_entity() -> Entity:
    return Entity(
        INTERACTION_RECORD,
        [
            Property("interaction_name"),
            Property("interaction_id"),
            Property("user", "object"),
            Property("payload", "object"),
        ],
    )


class SchemaRegistry:
    """
    Explicit container for every declaration of one application.

    Lookups are by name; relations can also be looked up by the attribute they
    expose on an entity.
    """

    def __init__(
        self,
        entities=(),
        relations=(),
        dictionaries=(),
        interactions=(),
    ):
        self.entities: List[Entity] = []
        self.relations: List[Relation] = []
        self.dictionaries: List[Dictionary] = []
        self.interactions: List[Interaction] = []
        self._records: Dict[str, Record] = {}
        self._relation_attrs: Dict[Tuple[str, str], Tuple[Relation, bool]] = {}
        self.interaction_event_entity = _interaction_event_entity()

        for entity in entities:
            self.add_entity(entity)
        for relation in relations:
            self.add_relation(relation)
        for dictionary in dictionaries:
            self.add_dictionary(dictionary)
        for interaction in interactions:
            self.add_interaction(interaction)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add_entity(self, entity: Entity) -> Entity:
        self._check_free(entity.name)
        self.entities.append(entity)
        self._records[entity.name] = entity
        return entity

    def add_relation(self, relation: Relation) -> Relation:
        self._check_free(relation.name)
        for key in ((relation.source, relation.source_property), (relation.target, relation.target_property)):
            if key in self._relation_attrs:
                raise ValueError(f"Attribute '{key[1]}' on '{key[0]}' is already bound to a relation")
        self.relations.append(relation)
        self._records[relation.name] = relation
        self._relation_attrs[(relation.source, relation.source_property)] = (relation, True)
        self._relation_attrs[(relation.target, relation.target_property)] = (relation, False)
        return relation

    def add_dictionary(self, dictionary: Dictionary) -> Dictionary:
        if self.get_dictionary(dictionary.name) is not None:
            raise ValueError(f"Dictionary '{dictionary.name}' already declared")
        self.dictionaries.append(dictionary)
        return dictionary

    def add_interaction(self, interaction: Interaction) -> Interaction:
        if any(existing.name == interaction.name for existing in self.interactions):
            raise ValueError(f"Interaction '{interaction.name}' already declared")
        self.interactions.append(interaction)
        return interaction

    def add_internal_records(self) -> None:
        """Register the interaction event entity (idempotent)."""
        if INTERACTION_RECORD not in self._records:
            self.add_entity(self.interaction_event_entity)

    def _check_free(self, name: str) -> None:
        if name in self._records:
            raise ValueError(f"Record '{name}' already declared")

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_record(self, name: str) -> Optional[Record]:
        return self._records.get(name)

    def get_entity(self, name: str) -> Optional[Entity]:
        record = self._records.get(name)
        return record if isinstance(record, Entity) else None

    def get_relation(self, name: str) -> Optional[Relation]:
        record = self._records.get(name)
        return record if isinstance(record, Relation) else None

    def get_dictionary(self, name: str) -> Optional[Dictionary]:
        for dictionary in self.dictionaries:
            if dictionary.name == name:
                return dictionary
        return None

    def get_interaction(self, name_or_uuid: str) -> Optional[Interaction]:
        for interaction in self.interactions:
            if interaction.name == name_or_uuid or interaction.uuid == name_or_uuid:
                return interaction
        return None

    def relation_for(self, record_name: str, attribute: str) -> Optional[Tuple[Relation, bool]]:
        """
        Return ``(relation, is_source)`` for a relation attribute of a record.

        ``is_source`` is True when ``record_name`` is the relation's source.
        """
        return self._relation_attrs.get((record_name, attribute))

    def relation_attributes(self, record_name: str) -> List[str]:
        return [attr for (name, attr) in self._relation_attrs if name == record_name]

    def records(self) -> Iterator[Record]:
        yield from self.entities
        yield from self.relations

    def copy(self) -> "SchemaRegistry":
        """A registry sharing the same declarations but with its own containers."""
        clone = SchemaRegistry.__new__(SchemaRegistry)
        clone.entities = list(self.entities)
        clone.relations = list(self.relations)
        clone.dictionaries = list(self.dictionaries)
        clone.interactions = list(self.interactions)
        clone._records = dict(self._records)
        clone._relation_attrs = dict(self._relation_attrs)
        clone.interaction_event_entity = self.interaction_event_entity
        return clone

    def __repr__(self) -> str:
        return (
            f"SchemaRegistry(entities={len(self.entities)}, relations={len(self.relations)}, "
            f"dictionaries={len(self.dictionaries)}, interactions={len(self.interactions)})"
        )


__all__ = [
    "Property",
    "Entity",
    "Relation",
    "Dictionary",
    "Interaction",
    "SchemaRegistry",
    "Record",
    "INTERACTION_RECORD",
    "DICTIONARY_RECORD",
    "HARD_DELETION_PROPERTY",
    "RELATION_TYPES",
]
