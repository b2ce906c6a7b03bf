"""
Shared pytest fixtures for interaqt tests.
"""

from types import SimpleNamespace

import pytest

from interaqt import Controller, EngineConfig, Entity, MemoryStorage, Property, Relation


@pytest.fixture
def config():
    """Engine configuration independent of the environment."""
    return EngineConfig(
        max_cascade_depth=64,
        max_cascade_steps=100000,
        max_revisits=1000,
        log_level="WARNING",
        ignore_guard=False,
        force_throw_dispatch_error=False,
        warn_dependency_order=True,
    )


@pytest.fixture
def start(config):
    """Async factory: build a controller over MemoryStorage and install it."""

    async def _start(schema, **kwargs):
        kwargs.setdefault("config", config)
        controller = Controller(schema, MemoryStorage(), **kwargs)
        await controller.setup(install=True)
        return controller

    return _start


@pytest.fixture
def blog():
    """Fresh User 1:n Post declarations; tests attach their own computations."""
    user = Entity("User", [Property("name")])
    post = Entity("Post", [Property("title"), Property("views", "number", default_value=0)])
    user_posts = Relation(user, "posts", post, "owner", "1:n")
    return SimpleNamespace(User=user, Post=post, UserPosts=user_posts)
