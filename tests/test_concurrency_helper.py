import asyncio
import pytest
from traylink.errors import Cancelled
from traylink.shared.concurrency_helper import Cancellable, wait_all
from traylink.shared.events import EventEmitter


def test_cancel_reaches_tasks_children_and_callbacks():
    async def main():
        token = Cancellable(name="root")
        child = token.child()
        fired = []
        token.connect(lambda: fired.append("root"))
        child.connect(lambda: fired.append("child"))
        task = token.create_task(asyncio.sleep(10))
        await asyncio.sleep(0)

        token.cancel()
        await asyncio.sleep(0.01)
        assert task.cancelled()
        assert child.cancelled
        assert sorted(fired) == ["child", "root"]
        assert token.running_tasks == set()

        late = []
        token.connect(lambda: late.append(True))
        assert late == [True]
        assert Cancellable(parent=token).cancelled

    asyncio.run(main())


def test_cancelling_a_child_leaves_the_parent_alone():
    async def main():
        token = Cancellable()
        child = token.child("scoped")
        child.cancel()
        assert child.cancelled
        assert not token.cancelled
        with pytest.raises(Cancelled):
            child.raise_if_cancelled()
        token.raise_if_cancelled()

    asyncio.run(main())


def test_run_turns_token_cancellation_into_cancelled():
    async def main():
        token = Cancellable(name="slow work")
        waiter = asyncio.create_task(token.run(asyncio.sleep(10)))
        await asyncio.sleep(0)
        token.cancel()
        with pytest.raises(Cancelled):
            await waiter
        assert not waiter.cancelled()

    asyncio.run(main())


def test_run_returns_results_and_errors():
    async def main():
        token = Cancellable()

        async def answer():
            return 42

        async def fail():
            raise ValueError("nope")

        assert await token.run(answer()) == 42
        with pytest.raises(ValueError):
            await token.run(fail())
        assert await token.run_in_executor(sum, [1, 2, 3]) == 6

    asyncio.run(main())


def test_cancelled_token_refuses_new_work():
    async def main():
        token = Cancellable()
        token.cancel()
        coro = asyncio.sleep(0)
        with pytest.raises(Cancelled):
            token.create_task(coro)
        with pytest.raises(Cancelled):
            await token.sleep(0)

    asyncio.run(main())


def test_wait_all_settles_everything_before_raising():
    async def main():
        finished = []

        async def slow():
            await asyncio.sleep(0.01)
            finished.append("slow")

        async def fail():
            raise RuntimeError("first")

        with pytest.raises(RuntimeError, match="first"):
            await wait_all([fail(), slow()])
        assert finished == ["slow"]
        assert await wait_all([asyncio.sleep(0, "a"), asyncio.sleep(0, "b")]) == ["a", "b"]

    asyncio.run(main())


def test_event_emitter_closed_event_set():
    emitter = EventEmitter(("ready",), owner="test")
    with pytest.raises(ValueError):
        emitter.connect("unknown", print)
    with pytest.raises(ValueError):
        emitter.emit("unknown")


def test_event_emitter_isolates_failing_subscribers():
    emitter = EventEmitter()
    seen = []

    def broken(value):
        raise RuntimeError(value)

    emitter.connect("changed", broken)
    handler_id = emitter.connect("changed", seen.append)
    emitter.emit("changed", 1)
    assert seen == [1]

    assert emitter.disconnect(handler_id)
    assert not emitter.disconnect(handler_id)
    emitter.emit("changed", 2)
    assert seen == [1]


def test_blocked_emitter_stays_silent():
    emitter = EventEmitter(("destroy",))
    seen = []
    emitter.connect("destroy", lambda: seen.append(True))
    emitter.block()
    emitter.emit("destroy")
    assert seen == []
    assert not emitter.has_subscribers("destroy")
