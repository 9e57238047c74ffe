import typing
from traylink.core.log_setup import get_logger
from traylink.errors import Cancelled, is_remote_unavailable
from traylink.shared.concurrency_helper import Cancellable
from .snapshot import PASSIVE

if typing.TYPE_CHECKING:
    from .item import StatusNotifierItem


class LivenessMonitor:
    """
    Reaps items whose peer vanished without giving up its bus name.

    Some applications (Electron ones, mostly) unexport the item object after
    hiding it and keep the connection open, so the name watcher never fires.
    When a call fails we wait a grace period and read a property: unknown
    object/interface/method/property means the item is gone.
    """

    CHECK_ALIVE_DELAY: typing.Final[float] = 10.0

    def __init__(self, item: "StatusNotifierItem"):
        self.item = item
        self.logger = get_logger(__name__)
        self._check: typing.Optional[Cancellable] = None

    @property
    def checking(self) -> bool:
        return self._check is not None

    def cancel(self) -> None:
        if self._check is not None:
            self._check.cancel()
            self._check = None

    async def check_alive(self) -> None:
        item = self.item
        if item.destroyed:
            return
        if item.status != PASSIVE and item.check_if_ready():
            self.cancel()
            return
        if self._check is not None:
            return

        check = self._check = item.cancellable.child("check-alive")
        try:
            self.logger.debug(f"{item.unique_id}: may not respond, checking...")
            await check.sleep(self.CHECK_ALIVE_DELAY)
            # Ping would be the natural call, but sandboxes (snap) block it.
            await check.run(item.proxy.fetch_property("Status"))
        except Cancelled:
            pass
        except Exception as e:
            if is_remote_unavailable(e):
                self.logger.warning(f"{item.unique_id}: not on bus anymore, removing it")
                item.destroy()
                return
            self.logger.warning(f"{item.unique_id}: liveness check failed: {e}")
        finally:
            check.release()
            if self._check is check:
                self._check = None
