import asyncio
import typing
from traylink.core.log_setup import get_logger
from traylink.errors import Cancelled
from traylink.shared.concurrency_helper import Cancellable
from .interfaces import EXTENSION_PROPERTIES
from ._dbus_proxy import ItemBusProxy


def signal_to_property_name(signal: str) -> typing.Optional[str]:
    """NewIcon -> Icon, XAyatanaNewLabel -> XAyatanaLabel, anything else -> None."""
    if signal.startswith("New"):
        return signal[3:]
    if signal.startswith("XAyatanaNew"):
        return f"XAyatana{signal[11:]}"
    return None


def property_group(prop: str) -> typing.List[str]:
    return [prop, f"{prop}Name", f"{prop}Pixmap", f"{prop}AccessibleDesc"]


class PropertySynchronizer:
    """
    Turns the item's New<Property> signals into property refreshes.

    The StatusNotifierItem protocol does not use PropertiesChanged: a peer only
    says "something about Icon changed", sometimes with the new value attached.
    Valued signals are applied right away; bare ones are collected for
    ``SIGNAL_ACCUMULATE_DELAY`` seconds and then every affected property is
    fetched again.
    """

    SIGNAL_ACCUMULATE_DELAY: typing.Final[float] = 0.1

    def __init__(
        self,
        proxy: ItemBusProxy,
        cancellable: Cancellable,
        owner_id: str = "",
    ):
        self.proxy = proxy
        self.owner_id = owner_id or proxy.bus_name
        self.logger = get_logger(__name__)
        self._cancellable = cancellable
        self._refresh_scope = cancellable.child("refresh")
        self._refreshes: typing.Dict[str, asyncio.Task] = {}
        self._accumulated_signals: typing.Set[str] = set()
        self._signals_accumulator: typing.Optional[asyncio.Task] = None
        self._queued_updates: typing.Dict[str, typing.Any] = {}
        self._queued_flush: typing.Optional[asyncio.Future] = None
        self.supported_properties: typing.List[str] = []

    @property
    def accumulated_signals(self) -> typing.FrozenSet[str]:
        return frozenset(self._accumulated_signals)

    def setup_property_list(self) -> typing.List[str]:
        """
        Rebuilds the list of properties this peer supports: the cached ones the
        interface declares, plus the extension properties once the peer has
        answered with anything at all.
        """
        interface_props = self.proxy.interface.properties
        supported = [
            p for p in self.proxy.get_cached_property_names() if p in interface_props
        ]
        if supported:
            supported.extend(p for p in EXTENSION_PROPERTIES if p not in supported)
        self.supported_properties = supported
        return supported

    def translated_properties(self, signal: str) -> typing.List[str]:
        prop = signal_to_property_name(signal)
        if not prop:
            return []
        return [p for p in property_group(prop) if p in self.supported_properties]

    def on_signal(self, signal: str, params: typing.Sequence[typing.Any]) -> None:
        """Entry point for every signal the item interface emits."""
        prop = signal_to_property_name(signal)
        if prop and params:
            self._cancellable.create_task(self.queue_update(prop, params[0]))
            return
        self._accumulated_signals.add(signal)
        if self._signals_accumulator is not None:
            return
        self._signals_accumulator = self._cancellable.create_task(
            self._accumulate_signals()
        )

    async def _accumulate_signals(self) -> None:
        try:
            await asyncio.sleep(self.SIGNAL_ACCUMULATE_DELAY)
            signals, self._accumulated_signals = self._accumulated_signals, set()
            for signal in signals:
                self._translate_new_signal(signal)
        finally:
            self._signals_accumulator = None

    def _translate_new_signal(self, signal: str) -> None:
        for prop in self.translated_properties(signal):
            self._cancellable.create_task(
                self._refresh_logged(prop, skip_equality_check=prop.endswith("Pixmap"))
            )

    async def _refresh_logged(self, name: str, skip_equality_check: bool) -> None:
        try:
            await self.refresh(name, skip_equality_check=skip_equality_check)
        except Cancelled:
            pass
        except Exception as e:
            self.logger.warning(f"{self.owner_id}: failed to refresh property {name}: {e}")

    async def refresh(self, name: str, skip_equality_check: bool = False) -> typing.Any:
        """
        Fetches name again and stores it in the snapshot. Concurrent refreshes of
        the same name share one fetch and settle with the same value.
        """
        task = self._refreshes.get(name)
        if task is None:
            task = self._refresh_scope.create_task(
                self._do_refresh(name, skip_equality_check)
            )
            task._traylink_awaited = True  # type: ignore[attr-defined]
            self._refreshes[name] = task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and not (current and current.cancelling()):
                raise Cancelled(f"Refresh of {name} was cancelled") from None
            raise

    async def _do_refresh(self, name: str, skip_equality_check: bool) -> typing.Any:
        try:
            value = await self.proxy.fetch_property(name)
            self.proxy.update_cached_properties(
                {name: value}, skip_equality_check=skip_equality_check
            )
            return value
        finally:
            if self._refreshes.get(name) is asyncio.current_task():
                del self._refreshes[name]

    def cancel_refreshes(self) -> None:
        """Drops every pending refresh, used when the peer leaves the bus."""
        self._refresh_scope.cancel()
        self._refreshes.clear()
        if not self._cancellable.cancelled:
            self._refresh_scope = self._cancellable.child("refresh")

    async def queue_update(self, name: str, value: typing.Any) -> None:
        """
        Applies a value carried by a signal on the next loop iteration. Updates
        queued before that point are flushed together, later ones win.
        """
        self._queued_updates[name] = value
        if self._queued_flush is None:
            loop = asyncio.get_running_loop()
            self._queued_flush = loop.create_future()
            loop.call_soon(self._flush_queued_updates, self._queued_flush)
        await asyncio.shield(self._queued_flush)

    def _flush_queued_updates(self, future: asyncio.Future) -> None:
        updates, self._queued_updates = self._queued_updates, {}
        self._queued_flush = None
        try:
            if not self._cancellable.cancelled:
                self.proxy.update_cached_properties(updates)
        finally:
            if not future.done():
                future.set_result(None)
