import asyncio
import pytest
from traylink.errors import Cancelled, IconLoadCancelled, IconLoadPending
from traylink.icons.load_slots import IconType, LoadSlotManager


def test_attention_shares_the_normal_slot():
    assert IconType.ATTENTION.slot is IconType.NORMAL
    assert IconType.NORMAL.slot is IconType.NORMAL
    assert IconType.OVERLAY.slot is IconType.OVERLAY


def test_joined_requests_run_once_and_share_the_result():
    async def main():
        slots = LoadSlotManager("test")
        gate = asyncio.Event()
        runs = []

        async def factory(cancellable):
            runs.append(cancellable)
            await gate.wait()
            return object()

        waiters = [
            asyncio.create_task(slots.run(IconType.NORMAL, "NORMAL:app@16:", factory, join=True))
            for _ in range(5)
        ]
        await asyncio.sleep(0)
        assert slots.loading(IconType.NORMAL) == "NORMAL:app@16:"
        gate.set()
        results = await asyncio.gather(*waiters)
        assert len(runs) == 1
        assert all(result is results[0] for result in results)
        assert slots.loading(IconType.NORMAL) is None

    asyncio.run(main())


def test_duplicate_request_is_pending_by_default():
    async def main():
        slots = LoadSlotManager("test")
        gate = asyncio.Event()

        async def factory(cancellable):
            await gate.wait()
            return "icon"

        first = asyncio.create_task(slots.run(IconType.NORMAL, "a", factory))
        await asyncio.sleep(0)
        with pytest.raises(IconLoadPending):
            await slots.run(IconType.ATTENTION, "a", factory)
        gate.set()
        assert await first == "icon"

    asyncio.run(main())


def test_new_id_supersedes_the_loading_one():
    async def main():
        slots = LoadSlotManager("test")
        tokens = {}
        order = []

        async def slow(cancellable):
            tokens["a"] = cancellable
            await asyncio.sleep(10)
            return "a"

        async def fast(cancellable):
            order.append(("b starts", tokens["a"].cancelled))
            return "b"

        first = asyncio.create_task(slots.run(IconType.NORMAL, "a", slow))
        await asyncio.sleep(0.01)
        assert await slots.run(IconType.NORMAL, "b", fast) == "b"
        assert order == [("b starts", True)]
        with pytest.raises(IconLoadCancelled) as excinfo:
            await first
        assert isinstance(excinfo.value, Cancelled)
        assert excinfo.value.load_id == "a"

    asyncio.run(main())


def test_slots_of_different_types_are_independent():
    async def main():
        slots = LoadSlotManager("test")
        gate = asyncio.Event()

        async def factory(cancellable):
            await gate.wait()
            return cancellable.name

        normal = asyncio.create_task(slots.run(IconType.NORMAL, "n", factory))
        overlay = asyncio.create_task(slots.run(IconType.OVERLAY, "o", factory))
        await asyncio.sleep(0)
        gate.set()
        assert await asyncio.gather(normal, overlay) == ["n", "o"]

    asyncio.run(main())


def test_token_cancellation_inside_the_load_ends_as_superseded():
    async def main():
        slots = LoadSlotManager("test")

        async def factory(cancellable):
            await asyncio.sleep(0)
            cancellable.raise_if_cancelled()
            return "never"

        waiter = asyncio.create_task(slots.run(IconType.OVERLAY, "o", factory))
        await asyncio.sleep(0)
        slots.cancel_all()
        with pytest.raises(IconLoadCancelled):
            await waiter
        assert slots.loading(IconType.OVERLAY) is None

    asyncio.run(main())


def test_failures_reach_the_caller_and_free_the_slot():
    async def main():
        slots = LoadSlotManager("test")

        async def factory(cancellable):
            raise ValueError("bad image")

        with pytest.raises(ValueError):
            await slots.run(IconType.NORMAL, "x", factory)
        assert slots.loading(IconType.NORMAL) is None

    asyncio.run(main())


def test_cancel_in_the_turn_the_load_finishes_still_cancels():
    async def main():
        slots = LoadSlotManager("test")

        async def factory(cancellable):
            return "loaded"

        waiter = asyncio.create_task(slots.run(IconType.NORMAL, "NORMAL:app@16:", factory))
        await asyncio.sleep(0)
        with pytest.raises(IconLoadPending) as pending:
            await slots.run(IconType.NORMAL, "NORMAL:app@16:", factory)
        pending.value.task.add_done_callback(lambda _task: slots.cancel_all())

        with pytest.raises(IconLoadCancelled):
            await waiter
        assert slots.loading(IconType.NORMAL) is None

    asyncio.run(main())
