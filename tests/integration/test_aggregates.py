"""Integration tests for incremental aggregates."""

import asyncio

import pytest

from interaqt import (
    Any_,
    Average,
    Count,
    Dictionary,
    Entity,
    Every,
    MatchExp,
    Property,
    Relation,
    SchemaRegistry,
    Summation,
    WeightedSummation,
)


async def value_of(controller, record_name, record_id, prop):
    found = await controller.storage.find_one(record_name, MatchExp.atom("id", "=", record_id), attribute_query=[prop])
    return found[prop]


def by_id(record_id):
    return MatchExp.atom("id", "=", record_id)


@pytest.mark.integration
def test_property_count_follows_links(blog, start):
    """Counting related records goes 0 -> 1 -> 0 as a post is linked and deleted"""
    blog.User.add_property(Property("post_count", "number", computation=Count(property="posts")))
    schema = SchemaRegistry(entities=[blog.User, blog.Post], relations=[blog.UserPosts])

    async def scenario():
        controller = await start(schema)
        user = await controller.storage.create("User", {"name": "ann"})
        assert await value_of(controller, "User", user["id"], "post_count") == 0

        post = await controller.storage.create("Post", {"title": "a", "owner": {"id": user["id"]}})
        assert await value_of(controller, "User", user["id"], "post_count") == 1

        await controller.storage.delete("Post", by_id(post["id"]))
        assert await value_of(controller, "User", user["id"], "post_count") == 0

    asyncio.run(scenario())


@pytest.mark.integration
def test_property_count_moves_with_owner(blog, start):
    """Relinking a post moves it from one owner's count to the other's"""
    blog.User.add_property(Property("post_count", "number", computation=Count(property="posts")))
    schema = SchemaRegistry(entities=[blog.User, blog.Post], relations=[blog.UserPosts])

    async def scenario():
        controller = await start(schema)
        ann = await controller.storage.create("User", {"name": "ann", "posts": [{"title": "a"}, {"title": "b"}]})
        bob = await controller.storage.create("User", {"name": "bob"})
        assert await value_of(controller, "User", ann["id"], "post_count") == 2

        post = await controller.storage.find_one("Post", MatchExp.atom("title", "=", "a"))
        await controller.storage.update("Post", by_id(post["id"]), {"owner": {"id": bob["id"]}})

        assert await value_of(controller, "User", ann["id"], "post_count") == 1
        assert await value_of(controller, "User", bob["id"], "post_count") == 1

    asyncio.run(scenario())


@pytest.mark.integration
def test_property_count_with_match_tracks_updates(blog, start):
    """A filtered count follows updates of the related records"""
    blog.User.add_property(
        Property(
            "x_posts",
            "number",
            computation=Count(property="posts", match=lambda post: post["title"].startswith("x")),
        )
    )
    schema = SchemaRegistry(entities=[blog.User, blog.Post], relations=[blog.UserPosts])

    async def scenario():
        controller = await start(schema)
        user = await controller.storage.create("User", {"name": "ann"})
        first = await controller.storage.create("Post", {"title": "xa", "owner": {"id": user["id"]}})
        second = await controller.storage.create("Post", {"title": "b", "owner": {"id": user["id"]}})
        assert await value_of(controller, "User", user["id"], "x_posts") == 1

        await controller.storage.update("Post", by_id(second["id"]), {"title": "xb"})
        assert await value_of(controller, "User", user["id"], "x_posts") == 2

        await controller.storage.update("Post", by_id(first["id"]), {"title": "a"})
        assert await value_of(controller, "User", user["id"], "x_posts") == 1

        # Unrelated field changes leave the count alone
        await controller.storage.update("Post", by_id(second["id"]), {"views": 10})
        assert await value_of(controller, "User", user["id"], "x_posts") == 1

    asyncio.run(scenario())


@pytest.mark.integration
def test_global_count_and_summation(blog, start):
    """Global totals follow creates, updates and deletes"""
    post_total = Dictionary("post_total", computation=Count(record=blog.Post))
    view_total = Dictionary("view_total", computation=Summation(record=blog.Post, attribute_query=["views"]))
    schema = SchemaRegistry(
        entities=[blog.User, blog.Post], relations=[blog.UserPosts], dictionaries=[post_total, view_total]
    )

    async def scenario():
        controller = await start(schema)
        storage = controller.storage
        first = await storage.create("Post", {"title": "a", "views": 3})
        await storage.create("Post", {"title": "b", "views": 4})
        assert await storage.get("state", "post_total") == 2
        assert await storage.get("state", "view_total") == 7

        await storage.update("Post", by_id(first["id"]), {"views": 10})
        assert await storage.get("state", "view_total") == 14

        await storage.delete("Post", by_id(first["id"]))
        assert await storage.get("state", "post_total") == 1
        assert await storage.get("state", "view_total") == 4

    asyncio.run(scenario())


@pytest.mark.integration
def test_summation_ignores_missing_values(blog, start):
    """Missing and non-numeric values count as zero"""
    view_total = Dictionary("view_total", computation=Summation(record=blog.Post, attribute_query=["views"]))
    schema = SchemaRegistry(entities=[blog.Post], dictionaries=[view_total])

    async def scenario():
        controller = await start(schema)
        await controller.storage.create("Post", {"title": "a", "views": None})
        await controller.storage.create("Post", {"title": "b", "views": "many"})
        await controller.storage.create("Post", {"title": "c", "views": 2})
        assert await controller.storage.get("state", "view_total") == 2

    asyncio.run(scenario())


@pytest.mark.integration
def test_property_summation_over_related_records(blog, start):
    """A user's total views follow their posts"""
    blog.User.add_property(
        Property("total_views", "number", computation=Summation(property="posts", attribute_query=["views"]))
    )
    schema = SchemaRegistry(entities=[blog.User, blog.Post], relations=[blog.UserPosts])

    async def scenario():
        controller = await start(schema)
        user = await controller.storage.create("User", {"name": "ann", "posts": [{"title": "a", "views": 5}]})
        post = await controller.storage.create("Post", {"title": "b", "views": 2, "owner": {"id": user["id"]}})
        assert await value_of(controller, "User", user["id"], "total_views") == 7

        await controller.storage.update("Post", by_id(post["id"]), {"views": 4})
        assert await value_of(controller, "User", user["id"], "total_views") == 9

        await controller.storage.delete("Post", by_id(post["id"]))
        assert await value_of(controller, "User", user["id"], "total_views") == 5

    asyncio.run(scenario())


@pytest.mark.integration
def test_global_average(blog, start):
    """Average keeps a running sum and count and is 0 when empty"""
    average = Dictionary("average_views", computation=Average(record=blog.Post, attribute_query=["views"]))
    schema = SchemaRegistry(entities=[blog.Post], dictionaries=[average])

    async def scenario():
        controller = await start(schema)
        storage = controller.storage
        assert await storage.get("state", "average_views") == 0

        first = await storage.create("Post", {"title": "a", "views": 2})
        second = await storage.create("Post", {"title": "b", "views": 4})
        assert await storage.get("state", "average_views") == 3

        await storage.update("Post", by_id(second["id"]), {"views": 10})
        assert await storage.get("state", "average_views") == 6

        await storage.delete("Post", by_id(first["id"]))
        assert await storage.get("state", "average_views") == 10

        await storage.delete("Post", by_id(second["id"]))
        assert await storage.get("state", "average_views") == 0

    asyncio.run(scenario())


@pytest.mark.integration
def test_property_average(blog, start):
    """A per-user average over related posts"""
    blog.User.add_property(
        Property("average_views", "number", computation=Average(property="posts", attribute_query=["views"]))
    )
    schema = SchemaRegistry(entities=[blog.User, blog.Post], relations=[blog.UserPosts])

    async def scenario():
        controller = await start(schema)
        user = await controller.storage.create(
            "User", {"name": "ann", "posts": [{"title": "a", "views": 1}, {"title": "b", "views": 3}]}
        )
        assert await value_of(controller, "User", user["id"], "average_views") == 2

    asyncio.run(scenario())


@pytest.mark.integration
def test_weighted_summation_matches_full_recompute(blog, start):
    """Incremental weighted sums equal a recomputation from scratch"""
    score = Dictionary(
        "score",
        computation=WeightedSummation(
            records=[blog.Post],
            match_record_to_weight=lambda post: {"weight": 2 if post["title"].startswith("x") else 1, "value": post["views"]},
        ),
    )
    schema = SchemaRegistry(entities=[blog.Post], dictionaries=[score])

    async def scenario():
        controller = await start(schema)
        storage = controller.storage
        first = await storage.create("Post", {"title": "xa", "views": 3})
        second = await storage.create("Post", {"title": "b", "views": 5})
        await storage.update("Post", by_id(second["id"]), {"title": "xb"})
        await storage.update("Post", by_id(first["id"]), {"views": 1})
        await storage.create("Post", {"title": "c", "views": 7})
        await storage.delete("Post", by_id(first["id"]))

        incremental = await storage.get("state", "score")
        computation = controller.scheduler.get_computation("score")
        full = await computation.compute(await controller.scheduler.resolve_data_deps(computation))

        assert incremental == full == 17

    asyncio.run(scenario())


@pytest.mark.integration
def test_property_weighted_summation(blog, start):
    """Weighted sums over related records"""
    blog.User.add_property(
        Property(
            "weighted_views",
            "number",
            computation=WeightedSummation(
                property="posts", match_record_to_weight=lambda post: {"weight": 3, "value": post["views"]}
            ),
        )
    )
    schema = SchemaRegistry(entities=[blog.User, blog.Post], relations=[blog.UserPosts])

    async def scenario():
        controller = await start(schema)
        user = await controller.storage.create("User", {"name": "ann", "posts": [{"title": "a", "views": 2}]})
        assert await value_of(controller, "User", user["id"], "weighted_views") == 6

    asyncio.run(scenario())


def approval_schema():
    request = Entity("Request", [Property("title")])
    approver = Entity("Approver", [Property("name")])
    approvals = Relation(
        request,
        "approvers",
        approver,
        "requests",
        "n:n",
        properties=[Property("approved", "boolean", default_value=False)],
    )
    link_query = [["&", {"attribute_query": ["approved"]}]]
    request.add_property(
        Property(
            "all_approved",
            "boolean",
            computation=Every(
                record=approvals,
                match=lambda item: item["&"]["approved"],
                not_empty=True,
                attribute_query=link_query,
            ),
        )
    )
    request.add_property(
        Property(
            "any_approved",
            "boolean",
            computation=Any_(record=approvals, match=lambda item: item["&"]["approved"], attribute_query=link_query),
        )
    )
    return SchemaRegistry(entities=[request, approver], relations=[approvals]), approvals


@pytest.mark.integration
def test_every_and_any_over_link_properties(start):
    """Every/Any follow a property of the relation records"""
    schema, approvals = approval_schema()

    async def scenario():
        controller = await start(schema)
        storage = controller.storage
        request = await storage.create("Request", {"title": "deploy"})
        first, second = [await storage.create("Approver", {"name": name}) for name in ("a", "b")]

        async def state():
            found = await storage.find_one(
                "Request", by_id(request["id"]), attribute_query=["all_approved", "any_approved"]
            )
            return found["all_approved"], found["any_approved"]

        # not_empty: no approvers yet is not "all approved"
        assert await state() == (False, False)

        link_a = await storage.create(approvals.name, {"source": {"id": request["id"]}, "target": {"id": first["id"]}})
        link_b = await storage.create(approvals.name, {"source": {"id": request["id"]}, "target": {"id": second["id"]}})
        assert await state() == (False, False)

        await storage.update(approvals.name, by_id(link_a["id"]), {"approved": True})
        assert await state() == (False, True)

        await storage.update(approvals.name, by_id(link_b["id"]), {"approved": True})
        assert await state() == (True, True)

        await storage.update(approvals.name, by_id(link_a["id"]), {"approved": False})
        assert await state() == (False, True)

        await storage.delete(approvals.name, by_id(link_a["id"]))
        assert await state() == (True, True)

    asyncio.run(scenario())


@pytest.mark.integration
def test_global_every_and_any(blog, start):
    """Global Every/Any over all records of an entity"""
    all_read = Dictionary("all_read", computation=Every(record=blog.Post, match=lambda post: post["views"] > 0))
    any_read = Dictionary("any_read", computation=Any_(record=blog.Post, match=lambda post: post["views"] > 0))
    schema = SchemaRegistry(entities=[blog.Post], dictionaries=[all_read, any_read])

    async def scenario():
        controller = await start(schema)
        storage = controller.storage
        # Without not_empty an empty set satisfies Every
        assert await storage.get("state", "all_read") is True
        assert await storage.get("state", "any_read") is False

        post = await storage.create("Post", {"title": "a"})
        assert await storage.get("state", "all_read") is False

        await storage.update("Post", by_id(post["id"]), {"views": 1})
        assert await storage.get("state", "all_read") is True
        assert await storage.get("state", "any_read") is True

    asyncio.run(scenario())
