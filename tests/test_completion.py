import asyncio

import pytest

from course_engine.core.completion import CompletionTracker, MutationState
from course_engine.exceptions import TransientNetworkError
from course_engine.models import CompletionRecord

from conftest import FakeClock, FakeRepository, UserBox, course_document


def _tracker(repo: FakeRepository, user=None, clock=None) -> CompletionTracker:
    return CompletionTracker(
        repo, user or UserBox("u1"), cleanup_interval=3600.0, clock=clock or FakeClock()
    )


def _record(lesson_id: str, user_id: str = "u1", course_id: str = "c1") -> CompletionRecord:
    return CompletionRecord(user_id=user_id, lesson_id=lesson_id, course_id=course_id,
                            enrollment_id="e1")


def test_load_returns_fetched_map(fake_repo: FakeRepository) -> None:
    fake_repo.completions[("u1", "m1-l1")] = _record("m1-l1")
    fake_repo.completions[("u2", "m1-l2")] = _record("m1-l2", user_id="u2")
    tracker = _tracker(fake_repo)

    status = asyncio.run(tracker.load("c1"))
    assert status == {"m1-l1": True}
    assert tracker.is_lesson_completed("c1", "m1-l1")
    assert not tracker.is_lesson_completed("c1", "m1-l2")


def test_no_user_means_empty_map_and_no_op(fake_repo: FakeRepository) -> None:
    tracker = _tracker(fake_repo, user=UserBox(None))

    async def scenario():
        status = await tracker.load("c1")
        mutation = await tracker.mark_complete("m1-l1", "c1", "e1")
        return status, mutation

    status, mutation = asyncio.run(scenario())
    assert status == {}
    assert mutation is None
    assert fake_repo.calls["upsert_completion"] == 0
    assert fake_repo.calls["fetch_completion_map"] == 0


def test_concurrent_loads_share_one_fetch(fake_repo: FakeRepository) -> None:
    tracker = _tracker(fake_repo)

    async def scenario():
        return await asyncio.gather(*(tracker.load("c1") for _ in range(4)))

    results = asyncio.run(scenario())
    assert fake_repo.calls["fetch_completion_map"] == 1
    assert all(result == results[0] for result in results)


def test_mark_complete_commits_and_persists(fake_repo: FakeRepository) -> None:
    tracker = _tracker(fake_repo)
    mutation = asyncio.run(tracker.mark_complete("m1-l1", "c1", "e1", score=80, payload={"k": 1}))

    assert mutation.state == MutationState.COMMITTED
    assert mutation.record.score == 80
    assert tracker.is_lesson_completed("c1", "m1-l1")
    stored = fake_repo.completions[("u1", "m1-l1")]
    assert stored.enrollment_id == "e1"
    assert stored.data == {"k": 1}


def test_failed_write_rolls_back_and_reraises(fake_repo: FakeRepository) -> None:
    fake_repo.failures["upsert_completion"] = TransientNetworkError("upsert_completion")
    tracker = _tracker(fake_repo)

    async def scenario():
        with pytest.raises(TransientNetworkError):
            await tracker.mark_complete("m1-l1", "c1", "e1")

    asyncio.run(scenario())
    assert not tracker.is_lesson_completed("c1", "m1-l1")
    assert "m1-l1" not in tracker.get_completion_status("c1")


def test_failed_unmark_restores_completed_flag(fake_repo: FakeRepository) -> None:
    tracker = _tracker(fake_repo)

    async def scenario():
        await tracker.mark_complete("m1-l1", "c1", "e1")
        fake_repo.failures["delete_completion"] = TransientNetworkError("delete_completion")
        with pytest.raises(TransientNetworkError):
            await tracker.unmark_complete("m1-l1", "c1")

    asyncio.run(scenario())
    assert tracker.is_lesson_completed("c1", "m1-l1")
    assert ("u1", "m1-l1") in fake_repo.completions


def test_unmark_clears_local_and_remote_state(fake_repo: FakeRepository) -> None:
    tracker = _tracker(fake_repo)

    async def scenario():
        await tracker.mark_complete("m1-l1", "c1", "e1")
        mutation = await tracker.unmark_complete("m1-l1", "c1")
        return mutation, await fake_repo.fetch_completion_map("c1", "u1")

    mutation, remote = asyncio.run(scenario())
    assert mutation.state == MutationState.COMMITTED
    assert not tracker.is_lesson_completed("c1", "m1-l1")
    assert "m1-l1" not in remote


def test_local_write_during_load_survives_merge(fake_repo: FakeRepository) -> None:
    gate = asyncio.Event()
    fake_repo.gates["fetch_completion_map"] = gate
    tracker = _tracker(fake_repo)

    async def scenario():
        load = asyncio.ensure_future(tracker.load("c1"))
        await asyncio.sleep(0.01)
        # The fetch started before this write, so it must not overwrite it
        await tracker.unmark_complete("m1-l2", "c1")
        fake_repo.completions[("u1", "m1-l2")] = _record("m1-l2")
        gate.set()
        return await load

    status = asyncio.run(scenario())
    assert status["m1-l2"] is False


def test_cleanup_runs_at_most_once_per_interval(fake_repo: FakeRepository) -> None:
    clock = FakeClock()
    fake_repo.completions[("u1", "gone")] = _record("gone")
    tracker = _tracker(fake_repo, clock=clock)

    async def scenario():
        first = await tracker.load("c1")
        clock.advance(60)
        await tracker.load("c1")
        clock.advance(3600)
        await tracker.load("c1")
        await tracker.load("c1", force_cleanup=True)
        return first

    first = asyncio.run(scenario())
    assert "gone" not in first
    assert fake_repo.calls["delete_orphaned_completions"] == 3


def test_switching_user_clears_cached_status(fake_repo: FakeRepository) -> None:
    user = UserBox("u1")
    tracker = _tracker(fake_repo, user=user)

    async def scenario():
        await tracker.mark_complete("m1-l1", "c1", "e1")
        user.user_id = "u2"
        return await tracker.load("c1")

    assert asyncio.run(scenario()) == {}
    assert not tracker.is_lesson_completed("c1", "m1-l1")


def test_evict_and_clear(fake_repo: FakeRepository) -> None:
    tracker = _tracker(fake_repo)

    async def scenario():
        await tracker.mark_complete("m1-l1", "c1", "e1")
        await tracker.mark_complete("x-l1", "c2", "e9")

    asyncio.run(scenario())
    tracker.evict("c1")
    assert tracker.get_completion_status("c1") == {}
    assert tracker.get_completion_status("c2") == {"x-l1": True}
    tracker.clear()
    assert tracker.get_completion_status("c2") == {}


def test_returned_status_is_a_copy(fake_repo: FakeRepository) -> None:
    tracker = _tracker(fake_repo)
    asyncio.run(tracker.mark_complete("m1-l1", "c1", "e1"))
    status = tracker.get_completion_status("c1")
    status["m1-l1"] = False
    assert tracker.is_lesson_completed("c1", "m1-l1")


def test_mutation_state_machine_rejects_double_transition() -> None:
    repo = FakeRepository.from_document(course_document())
    mutation = asyncio.run(_tracker(repo).mark_complete("m1-l1", "c1", "e1"))
    with pytest.raises(RuntimeError):
        mutation.roll_back(ValueError("late"))


def test_pending_unmark_survives_load_that_sees_old_record(fake_repo: FakeRepository) -> None:
    fake_repo.completions[("u1", "m1-l1")] = _record("m1-l1")
    tracker = _tracker(fake_repo)

    async def scenario():
        await tracker.load("c1")
        gate = asyncio.Event()
        fake_repo.gates["delete_completion"] = gate
        unmark = asyncio.ensure_future(tracker.unmark_complete("m1-l1", "c1"))
        await asyncio.sleep(0.01)
        # The delete has not landed, so the fetch still returns the record
        during_load = await tracker.load("c1", force_cleanup=True)
        gate.set()
        await unmark
        return during_load

    during_load = asyncio.run(scenario())
    assert during_load["m1-l1"] is False
    assert not tracker.is_lesson_completed("c1", "m1-l1")
    assert ("u1", "m1-l1") not in fake_repo.completions


def test_lessons_missing_from_fetch_are_not_completed(fake_repo: FakeRepository) -> None:
    fake_repo.completions[("u1", "m1-l1")] = _record("m1-l1")
    tracker = _tracker(fake_repo)

    async def scenario():
        first = await tracker.load("c1")
        del fake_repo.lessons["m1-l1"]
        second = await tracker.load("c1", force_cleanup=True)
        return first, second

    first, second = asyncio.run(scenario())
    assert first == {"m1-l1": True}
    assert second == {"m1-l1": False}
    assert not tracker.is_lesson_completed("c1", "m1-l1")
    assert ("u1", "m1-l1") not in fake_repo.completions


class SnapshotRepository(FakeRepository):
    """Completion map reads capture their result before waiting on the gate."""

    async def fetch_completion_map(self, course_id, user_id):
        snapshot = {
            record.lesson_id: True
            for (uid, _), record in self.completions.items()
            if uid == user_id and record.course_id == course_id
        }
        await self._enter("fetch_completion_map")
        return snapshot


def test_write_landing_after_fetch_snapshot_is_kept() -> None:
    repo = SnapshotRepository.from_document(course_document())
    repo.completions[("u1", "m1-l1")] = _record("m1-l1")
    tracker = _tracker(repo)

    async def scenario():
        await tracker.load("c1")
        delete_gate = asyncio.Event()
        fetch_gate = asyncio.Event()
        repo.gates["delete_completion"] = delete_gate
        repo.gates["fetch_completion_map"] = fetch_gate
        unmark = asyncio.ensure_future(tracker.unmark_complete("m1-l1", "c1"))
        await asyncio.sleep(0.01)
        load = asyncio.ensure_future(tracker.load("c1", force_cleanup=True))
        await asyncio.sleep(0.01)
        delete_gate.set()
        await unmark
        fetch_gate.set()
        return await load

    status = asyncio.run(scenario())
    assert status["m1-l1"] is False
    assert ("u1", "m1-l1") not in repo.completions


def test_load_in_flight_during_evict_is_discarded() -> None:
    repo = SnapshotRepository.from_document(course_document())
    repo.completions[("u1", "m1-l1")] = _record("m1-l1")
    tracker = _tracker(repo)

    async def scenario():
        gate = asyncio.Event()
        repo.gates["fetch_completion_map"] = gate
        stale = asyncio.ensure_future(tracker.load("c1"))
        await asyncio.sleep(0.01)
        tracker.evict("c1")
        del repo.completions[("u1", "m1-l1")]
        gate.set()
        return await stale

    assert asyncio.run(scenario()) == {}
    assert tracker.get_completion_status("c1") == {}
    assert not tracker.is_lesson_completed("c1", "m1-l1")
