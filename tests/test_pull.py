"""Tests for pull / reconciliation from the remote store."""

import logging

import pytest

from couplehabits.types import GoalScope


@pytest.fixture
def couple_world(remote, make_user, make_couple, make_goal, make_progress, ids):
    """Remote state for an active couple (a, b) plus an unrelated user."""
    a = make_user(id=ids.a)
    b = make_user(id=ids.b)
    stranger = make_user(id=ids.stranger)
    couple = make_couple(ids.a, ids.b, id=ids.couple)
    a.couple_id = b.couple_id = couple.id

    shared = make_goal(scope=GoalScope.COUPLE, couple_id=couple.id, title="Walk daily")
    mine = make_goal(owner_user_id=ids.a, title="Read")
    partners = make_goal(owner_user_id=ids.b, title="Partner's own")
    foreign = make_goal(owner_user_id=ids.stranger, title="Not ours")

    progress = [
        make_progress(shared.id, ids.a),
        make_progress(shared.id, ids.b),
        make_progress(mine.id, ids.a),
    ]
    foreign_progress = make_progress(foreign.id, ids.stranger)

    for user in (a, b, stranger):
        remote.seed("users", user)
    remote.seed("couples", couple)
    for goal in (shared, mine, partners, foreign):
        remote.seed("goals", goal)
    for p in progress + [foreign_progress]:
        remote.seed("progress", p)

    return {
        "couple": couple,
        "shared": shared,
        "mine": mine,
        "partners": partners,
        "foreign": foreign,
        "progress": progress,
        "foreign_progress": foreign_progress,
    }


class TestPull:
    @pytest.mark.asyncio
    async def test_pull_hydrates_everything_visible(self, engine, store, couple_world, ids):
        result = await engine.set_context(ids.a, ids.couple)

        assert result.success, result.errors
        assert store.get_couple(ids.couple) == couple_world["couple"]
        assert store.get_user(ids.a) is not None
        assert store.get_user(ids.b) is not None
        assert store.get_user(ids.stranger) is None

        assert store.get_goal(couple_world["shared"].id) is not None
        assert store.get_goal(couple_world["mine"].id) is not None
        assert store.get_goal(couple_world["partners"].id) is None
        assert store.get_goal(couple_world["foreign"].id) is None

        assert store.count("progress") == 3
        assert store.get("progress", couple_world["foreign_progress"].id) is None
        # couple + 2 users + 2 goals + 3 progress
        assert result.pulled == 8

    @pytest.mark.asyncio
    async def test_pull_discovers_couple(self, engine, store, couple_world, ids):
        await engine.set_context(ids.b)

        assert engine.context.couple_id == ids.couple
        assert store.get_goal(couple_world["shared"].id) is not None
        assert store.get_goal(couple_world["partners"].id) is not None

    @pytest.mark.asyncio
    async def test_pull_without_couple(self, engine, store, remote, make_goal, ids):
        own = make_goal(owner_user_id=ids.solo)
        remote.seed("goals", own)

        result = await engine.set_context(ids.solo)

        assert result.pulled == 1
        assert engine.context.couple_id is None
        assert store.get_goal(own.id) == own

    @pytest.mark.asyncio
    async def test_pull_is_idempotent(self, engine, store, couple_world, ids):
        await engine.set_context(ids.a, ids.couple)
        await engine.pull_from_remote()

        assert store.count("goals") == 2
        assert store.count("progress") == 3

    @pytest.mark.asyncio
    async def test_pull_without_context_is_empty(self, engine, remote):
        result = await engine.pull_from_remote()

        assert result.pulled == 0
        assert result.success

    @pytest.mark.asyncio
    async def test_remote_overwrites_local(self, engine, store, remote, make_goal, ids):
        goal = make_goal(owner_user_id=ids.a, title="Local title")
        store.save_goal(goal)
        goal.title = "Remote title"
        remote.seed("goals", goal)

        await engine.set_context(ids.a)

        assert store.get_goal(goal.id).title == "Remote title"


class TestPartialPull:
    @pytest.mark.asyncio
    async def test_progress_failure_keeps_goals(self, engine, store, remote, couple_world, ids):
        remote.fail_tables.add("progress")

        result = await engine.set_context(ids.a, ids.couple)

        assert not result.success
        assert any("progress" in e for e in result.errors)
        assert store.get_goal(couple_world["shared"].id) is not None
        assert store.count("progress") == 0

    @pytest.mark.asyncio
    async def test_user_failure_keeps_goals(self, engine, store, remote, couple_world, ids):
        remote.fail_tables.add("users")

        result = await engine.set_context(ids.a, ids.couple)

        assert len(result.errors) == 2
        assert store.get_user(ids.b) is None
        assert store.count("goals") == 2

    @pytest.mark.asyncio
    async def test_couple_failure_still_pulls_goals(self, engine, store, remote, couple_world, ids):
        remote.fail_tables.add("couples")

        result = await engine.set_context(ids.a, ids.couple)

        assert store.get_couple(ids.couple) is None
        assert store.count("goals") == 2
        assert len(result.errors) == 1

    @pytest.mark.asyncio
    async def test_malformed_row_is_skipped(self, engine, store, remote, make_goal, ids):
        good = make_goal(owner_user_id=ids.a)
        remote.seed("goals", good)
        remote.tables["goals"]["bad"] = {"id": "bad", "owner_user_id": ids.a, "scope": "weird"}

        result = await engine.set_context(ids.a)

        assert store.get_goal(good.id) == good
        assert store.get_goal("bad") is None
        assert len(result.errors) == 1


class TestSubscription:
    @pytest.mark.asyncio
    async def test_set_context_subscribes_once(self, engine, remote, ids):
        await engine.set_context(ids.a)
        await engine.set_context(ids.a)
        await engine.set_context(ids.a, ids.couple)

        assert remote.subscribe_calls == 1
        assert len(remote.callbacks) == 1

    @pytest.mark.asyncio
    async def test_subscribe_failure_is_retried(self, engine, remote, ids):
        remote.fail_subscribe = True
        result = await engine.set_context(ids.a)
        assert result.success

        remote.fail_subscribe = False
        await engine.set_context(ids.a)

        assert remote.subscribe_calls == 2
        assert len(remote.callbacks) == 1

    @pytest.mark.asyncio
    async def test_clear_context_unsubscribes(self, engine, remote, ids):
        await engine.set_context(ids.a)
        await engine.clear_context()

        assert engine.context is None
        assert remote.callbacks == []

    @pytest.mark.asyncio
    async def test_set_context_requires_user(self, engine):
        with pytest.raises(ValueError):
            await engine.set_context("")


class TestFetchCoupleByCode:
    @pytest.mark.asyncio
    async def test_found(self, engine, remote, make_couple, ids):
        couple = make_couple(ids.a, code="ABC123")
        remote.seed("couples", couple)

        assert await engine.fetch_couple_by_code("ABC123") == couple

    @pytest.mark.asyncio
    async def test_missing(self, engine):
        assert await engine.fetch_couple_by_code("ZZZZZZ") is None

    @pytest.mark.asyncio
    async def test_remote_error_returns_none(self, engine, remote):
        remote.fail_tables.add("couples")

        assert await engine.fetch_couple_by_code("ABC123") is None

    @pytest.mark.asyncio
    async def test_unreadable_row_returns_none(self, engine, remote, make_couple, ids, caplog):
        row = remote.seed("couples", make_couple(ids.a, code="ARC123"))
        row["status"] = "archived"

        with caplog.at_level(logging.WARNING):
            assert await engine.fetch_couple_by_code("ARC123") is None
        assert "ARC123" in caplog.text
