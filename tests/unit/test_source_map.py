"""Unit tests for data dependency source maps."""

import asyncio
from types import SimpleNamespace

import pytest

from interaqt import (
    DICTIONARY_RECORD,
    ComputationDataDepError,
    Count,
    Custom,
    Dictionary,
    MutationEvent,
    Property,
    PropertyDataDep,
    RecordsDataDep,
    SchemaRegistry,
    SourceMap,
    SourceMapIndex,
    Summation,
)


def summarize(maps):
    return {(m.type, m.record_name, m.target_path, m.is_relation) for m in maps}


@pytest.mark.unit
@pytest.mark.scheduler
class TestSourceMapConversion:
    """Declared dependencies become (event type, record) listeners."""

    def test_property_count_listens_to_relation_records(self, blog, start):
        """A related-record count listens to creation and deletion of links"""
        blog.User.add_property(Property("post_count", "number", computation=Count(property="posts")))
        schema = SchemaRegistry(entities=[blog.User, blog.Post], relations=[blog.UserPosts])

        async def scenario():
            controller = await start(schema)
            computation = controller.scheduler.get_computation("User_post_count")
            maps = controller.scheduler.source_maps.for_computation(computation)

            summary = summarize(maps)
            assert ("create", "User_posts_owner_Post", ("posts",), True) in summary
            assert ("delete", "User_posts_owner_Post", ("posts",), True) in summary
            # Only the relation and the related records are listened to, never the host itself
            assert all(m.record_name != "User" for m in maps)
            assert all(m.source_record_name == "User" for m in maps)

        asyncio.run(scenario())

    def test_global_summation_listens_to_summed_field(self, blog, start):
        """A records dependency listens to create, delete and updates of queried fields"""
        total = Dictionary("total_views", computation=Summation(record=blog.Post, attribute_query=["views"]))
        schema = SchemaRegistry(entities=[blog.User, blog.Post], relations=[blog.UserPosts], dictionaries=[total])

        async def scenario():
            controller = await start(schema)
            computation = controller.scheduler.get_computation("total_views")
            maps = controller.scheduler.source_maps.for_computation(computation)

            assert summarize(maps) == {
                ("create", "Post", (), False),
                ("delete", "Post", (), False),
                ("update", "Post", (), False),
            }
            update = next(m for m in maps if m.type == "update")
            assert update.attributes == ("views",)

        asyncio.run(scenario())

    def test_property_never_listens_to_itself(self, blog, start):
        """A property dependency on '*' leaves out the computed property"""
        blog.Post.add_property(
            Property(
                "label",
                computation=Custom(
                    data_deps={"_current": PropertyDataDep(["*"])},
                    compute=lambda handle, deps, record: deps["_current"]["title"],
                ),
            )
        )
        schema = SchemaRegistry(entities=[blog.User, blog.Post], relations=[blog.UserPosts])

        async def scenario():
            controller = await start(schema)
            computation = controller.scheduler.get_computation("Post_label")
            maps = controller.scheduler.source_maps.for_computation(computation)
            update = next(m for m in maps if m.type == "update")
            assert "label" not in update.attributes
            assert {"title", "views"} <= set(update.attributes)
            assert any(m.type == "create" and m.record_name == "Post" for m in maps)

        asyncio.run(scenario())

    def test_unknown_source_is_rejected(self, blog, start):
        """Depending on an undeclared record fails at setup"""
        broken = Dictionary("broken", computation=Custom(data_deps={"main": RecordsDataDep("Nope")}))
        schema = SchemaRegistry(entities=[blog.Post], dictionaries=[broken])

        async def scenario():
            await start(schema)

        with pytest.raises(ComputationDataDepError) as exc_info:
            asyncio.run(scenario())
        assert exc_info.value.dep_name == "main"


@pytest.mark.unit
@pytest.mark.scheduler
class TestShouldTrigger:
    """Event filtering per source map."""

    computation = SimpleNamespace(name="c")

    def test_create_and_delete_always_trigger(self):
        """Non-update events trigger unconditionally"""
        source = SourceMap(None, "create", "Post", "Post", self.computation)
        assert SourceMapIndex.should_trigger(source, MutationEvent("Post", "create", record={"id": 1}))

    def test_update_needs_a_changed_attribute(self):
        """Updates trigger only when a listened attribute changed"""
        source = SourceMap(None, "update", "Post", "Post", self.computation, attributes=("id", "views"))
        changed = MutationEvent("Post", "update", record={"id": 1, "views": 2}, old_record={"id": 1, "views": 1})
        same = MutationEvent("Post", "update", record={"id": 1, "views": 1}, old_record={"id": 1, "views": 1})
        other = MutationEvent(
            "Post", "update", record={"id": 1, "title": "b"}, old_record={"id": 1, "title": "a"}, keys=("title",)
        )
        assert SourceMapIndex.should_trigger(source, changed)
        assert not SourceMapIndex.should_trigger(source, same)
        assert not SourceMapIndex.should_trigger(source, other)

    def test_dictionary_key_filters(self):
        """Dictionary listeners only see their own key"""
        source = SourceMap(
            None, "update", DICTIONARY_RECORD, None, self.computation, attributes=("value",), dictionary_key="total"
        )

        def event(key):
            return MutationEvent(
                DICTIONARY_RECORD,
                "update",
                record={"id": key, "key": key, "value": 2},
                old_record={"id": key, "key": key, "value": 1},
                keys=("value",),
            )

        assert SourceMapIndex.should_trigger(source, event("total"))
        assert not SourceMapIndex.should_trigger(source, event("other"))

    def test_index_lookup(self):
        """find returns maps registered for the event's record and type"""
        index = SourceMapIndex(schema=None, storage=None)
        create = SourceMap(None, "create", "Post", "Post", self.computation)
        delete = SourceMap(None, "delete", "Post", "Post", self.computation)
        index.add(create)
        index.add(delete)

        assert index.find(MutationEvent("Post", "create", record={"id": 1})) == [create]
        assert index.find(MutationEvent("User", "create", record={"id": 1})) == []
        assert len(index) == 2
        index.clear()
        assert len(index) == 0
