import asyncio
import dataclasses
import enum
import typing
from traylink.core.log_setup import get_logger
from traylink.errors import Cancelled, IconLoadCancelled, IconLoadPending
from traylink.shared.concurrency_helper import Cancellable

T = typing.TypeVar("T")


class IconType(enum.IntEnum):
    NORMAL = 0
    ATTENTION = 1
    OVERLAY = 2

    @property
    def slot(self) -> "IconType":
        """The attention icon replaces the normal one, so they share a slot."""
        return IconType.NORMAL if self is IconType.ATTENTION else self


@dataclasses.dataclass
class LoadSlot:
    load_id: str
    cancellable: Cancellable
    task: "asyncio.Task[typing.Any]"


class LoadSlotManager:
    """
    At most one icon load in flight per icon type.

    Asking for the id already loading raises ``IconLoadPending`` (or, with
    ``join``, waits for that load and returns its result). Asking for another
    id cancels the current load first; its waiters get ``IconLoadCancelled``.
    Every load runs under its own token, independent from the owner's.
    """

    def __init__(self, owner_id: str = ""):
        self.owner_id = owner_id
        self.logger = get_logger(__name__)
        self._slots: typing.Dict[IconType, LoadSlot] = {}

    def loading(self, icon_type: IconType) -> typing.Optional[str]:
        slot = self._slots.get(icon_type.slot)
        return slot.load_id if slot else None

    def cancel(self, icon_type: IconType) -> None:
        slot = self._slots.pop(icon_type.slot, None)
        if slot is not None:
            self.logger.debug(f"{self.owner_id}: cancelling icon load {slot.load_id}")
            slot.cancellable.cancel()

    def cancel_all(self) -> None:
        for icon_type in list(self._slots):
            self.cancel(icon_type)

    async def run(
        self,
        icon_type: IconType,
        load_id: str,
        factory: typing.Callable[[Cancellable], typing.Awaitable[T]],
        join: bool = False,
    ) -> T:
        slot_type = icon_type.slot
        current = self._slots.get(slot_type)
        if current is not None:
            if current.load_id == load_id:
                if not join:
                    self.logger.debug(
                        f"{self.owner_id}, icon {load_id} is still loading, ignoring the request"
                    )
                    raise IconLoadPending(load_id, current.task)
                return await self._wait(current)
            self.cancel(slot_type)

        cancellable = Cancellable(name=load_id)
        task = cancellable.create_task(factory(cancellable), name=f"icon load {load_id}")
        task._traylink_awaited = True  # type: ignore[attr-defined]
        slot = self._slots[slot_type] = LoadSlot(load_id, cancellable, task)
        try:
            return await self._wait(slot)
        except asyncio.CancelledError:
            # the caller went away, nobody else owns this load
            if self._slots.get(slot_type) is slot:
                self.cancel(slot_type)
            raise
        finally:
            if self._slots.get(slot_type) is slot:
                del self._slots[slot_type]

    async def _wait(self, slot: LoadSlot) -> typing.Any:
        try:
            result = await asyncio.shield(slot.task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if slot.task.cancelled() and not (current and current.cancelling()):
                raise IconLoadCancelled(slot.load_id) from None
            raise
        except Cancelled as e:
            if isinstance(e, IconLoadCancelled):
                raise
            raise IconLoadCancelled(slot.load_id) from None
        # the load may finish in the very turn that cancelled its slot
        if slot.cancellable.cancelled:
            raise IconLoadCancelled(slot.load_id)
        return result
