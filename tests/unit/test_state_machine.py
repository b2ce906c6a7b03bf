"""Unit tests for state machine declarations and transition lookup."""

import pytest

from interaqt import INTERACTION_RECORD, Interaction, MutationEvent, StateMachine, StateNode, StateTransfer
from interaqt.computations import TransitionFinder

draft = StateNode("draft")
published = StateNode("published")
archived = StateNode("archived")
publish = Interaction("Publish")


def interaction_event(name):
    return MutationEvent(INTERACTION_RECORD, "create", record={"id": 1, "interaction_name": name})


def make_machine():
    return StateMachine(
        states=[draft, published, archived],
        transfers=[
            StateTransfer(draft, published, publish),
            StateTransfer(published, archived, {"record_name": "Review", "type": "create", "record": {"verdict": "stale"}}),
            StateTransfer(draft, archived, {"record_name": "Flag"}),
        ],
        default_state=draft,
    )


@pytest.mark.unit
@pytest.mark.computations
class TestStateMachineDeclaration:
    """Declarations are validated eagerly."""

    def test_duplicate_state_names(self):
        """State names must be unique"""
        with pytest.raises(ValueError, match="duplicate"):
            StateMachine(states=[draft, StateNode("draft")], transfers=[], default_state=draft)

    def test_default_state_must_be_declared(self):
        """The default state is one of the states"""
        with pytest.raises(ValueError, match="Default state"):
            StateMachine(states=[published], transfers=[], default_state=draft)

    def test_transfer_states_must_be_declared(self):
        """Transfers only use declared states"""
        with pytest.raises(ValueError, match="undeclared state"):
            StateMachine(states=[draft], transfers=[StateTransfer(draft, published, publish)], default_state=draft)


@pytest.mark.unit
@pytest.mark.computations
class TestTransitionFinder:
    """Matching triggers against mutation events."""

    def test_interaction_trigger(self):
        """Interaction triggers match creation of their interaction event"""
        finder = TransitionFinder(make_machine())

        assert [t.next for t in finder.candidates("draft", interaction_event("Publish"))] == [published]
        assert finder.candidates("draft", interaction_event("Delete")) == []
        assert finder.candidates("published", interaction_event("Publish")) == []

    def test_mapping_trigger_is_deep_partial(self):
        """Mapping triggers compare only the keys they name"""
        finder = TransitionFinder(make_machine())
        stale = MutationEvent("Review", "create", record={"id": 3, "verdict": "stale", "score": 1})
        fresh = MutationEvent("Review", "create", record={"id": 4, "verdict": "fresh"})

        assert [t.next for t in finder.candidates("published", stale)] == [archived]
        assert finder.candidates("published", fresh) == []

    def test_find_transfers_ignores_current_state(self):
        """find_transfers looks at every transfer"""
        finder = TransitionFinder(make_machine())
        flag = MutationEvent("Flag", "delete", record={"id": 1})
        assert [t.next for t in finder.find_transfers(flag)] == [archived]

    def test_data_sources(self):
        """Mapping triggers are listened to by record and event type"""
        finder = TransitionFinder(make_machine())
        assert finder.data_sources() == [
            ("Review", "create"),
            ("Flag", "create"),
            ("Flag", "update"),
            ("Flag", "delete"),
        ]
        assert finder.state("published") is published
        assert finder.state("missing") is None

    def test_data_trigger_needs_record_name(self):
        """A mapping trigger without record_name cannot be indexed"""
        machine = StateMachine(
            states=[draft, published],
            transfers=[StateTransfer(draft, published, {"type": "create"})],
            default_state=draft,
        )
        with pytest.raises(ValueError, match="record_name"):
            TransitionFinder(machine).data_sources()
