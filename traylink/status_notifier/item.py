import math
import typing
from dbus_fast.aio import MessageBus
from traylink.core.log_setup import get_logger
from traylink.errors import Cancelled, is_unknown_method
from traylink.shared.concurrency_helper import Cancellable, wait_all
from traylink.shared.events import EventEmitter
from ._dbus_proxy import DBusItemProxy, ItemBusProxy, indicator_id
from .activation import LaunchContext, StartupNotifyContext, read_process_command_line
from .liveness import LivenessMonitor
from .property_sync import PropertySynchronizer
from .readiness import ReadinessGate
from .snapshot import NEEDS_ATTENTION, PASSIVE, IconTriple

ITEM_EVENTS: typing.Final[typing.Tuple[str, ...]] = (
    "ready",
    "icon",
    "overlay-icon",
    "label",
    "menu",
    "accessible-name",
    "status",
    "name-owner-changed",
    "reset",
    "destroy",
)

PROVIDE_ACTIVATION_TOKEN: typing.Final[str] = "ProvideXdgActivationToken"


class StatusNotifierItem:
    """
    Live model of one remote StatusNotifierItem.

    Owns the bus proxy and keeps its property snapshot current, turns the
    protocol's change notifications into the events listed in ITEM_EVENTS and
    forwards user actions to the peer. Everything the item starts runs under
    one Cancellable, so ``destroy`` stops all of it at once.

    Must be created while an asyncio loop is running: setup starts right away.
    """

    NEEDED_PROPERTIES: typing.Final[typing.Tuple[str, ...]] = ("Id", "Menu")
    NEEDED_PROPERTIES_ATTEMPTS: typing.Final[int] = 3
    NEEDED_PROPERTIES_DELAY: typing.Final[float] = 1.0

    def __init__(
        self,
        proxy: ItemBusProxy,
        service: typing.Optional[str] = None,
        launch_context: typing.Optional[LaunchContext] = None,
    ):
        self.proxy = proxy
        self.bus_name = proxy.bus_name
        self._unique_id = indicator_id(
            service or proxy.bus_name, proxy.bus_name, proxy.object_path
        )
        self.logger = get_logger(__name__)
        self._cancellable = Cancellable(name=self._unique_id)
        self._events = EventEmitter(ITEM_EVENTS, owner=self._unique_id)
        self._readiness = ReadinessGate()
        self._sync = PropertySynchronizer(proxy, self._cancellable, self._unique_id)
        self._liveness = LivenessMonitor(self)
        self._launch_context = launch_context or StartupNotifyContext()
        self._delay_check: typing.Optional[Cancellable] = None
        self._capabilities: typing.Dict[str, bool] = {}
        self._command_line: typing.Optional[str] = None
        self._destroyed = False
        self.supports_activation: typing.Optional[bool] = None

        proxy.connect("properties-changed", self._on_properties_changed)
        proxy.connect("signal", self._on_proxy_signal)
        proxy.connect("name-owner-changed", self._name_owner_changed)
        proxy.set_cached_property("Status", PASSIVE)
        self._cancellable.create_task(
            self._setup_proxy(), name=f"setup {self._unique_id}"
        )

    @classmethod
    def for_bus(
        cls,
        bus: MessageBus,
        service: str,
        bus_name: str,
        object_path: str,
        launch_context: typing.Optional[LaunchContext] = None,
    ) -> "StatusNotifierItem":
        """Item backed by a real D-Bus connection."""
        unique_id = indicator_id(service, bus_name, object_path)
        proxy = DBusItemProxy(
            bus,
            bus_name,
            object_path,
            watch_name=service if unique_id == service else None,
        )
        return cls(proxy, service, launch_context)

    def connect(self, event: str, callback: typing.Callable[..., typing.Any]) -> int:
        return self._events.connect(event, callback)

    def disconnect(self, handler_id: int) -> bool:
        return self._events.disconnect(handler_id)

    def _emit(self, event: str) -> None:
        if not self._destroyed:
            self._events.emit(event, self)

    async def _setup_proxy(self) -> None:
        try:
            await self.proxy.init(self._cancellable)
        except Cancelled:
            return
        except Exception as e:
            self.logger.warning(f"While initializing proxy for {self._unique_id}: {e}")
            self.destroy()
            return

        self.check_if_ready()
        await self._ensure_needed_properties()

        try:
            pid = await self._cancellable.run(self.proxy.get_connection_pid())
            self._command_line = await self._cancellable.run_in_executor(
                read_process_command_line, pid
            )
        except Cancelled:
            pass
        except Exception as e:
            self.logger.debug(f"{self._unique_id}, failed getting command line: {e}")

    def check_if_ready(self) -> bool:
        """Recomputes readiness, True only when the item just became ready."""
        became_ready = self._readiness.update(
            self.has_name_owner, self.id, self.menu_path
        )
        self._sync.setup_property_list()
        if became_ready:
            if self._delay_check is not None:
                self._delay_check.cancel()
                self._delay_check = None
            self._emit("ready")
        return became_ready

    def _reset_needed_properties(self) -> None:
        for prop in self.NEEDED_PROPERTIES:
            self.proxy.set_cached_property(prop, None)

    async def _check_needed_properties(self) -> bool:
        if self.id and self.menu_path:
            return True
        for _ in range(self.NEEDED_PROPERTIES_ATTEMPTS):
            delay = self._delay_check = self._cancellable.child("needed-properties")
            try:
                await delay.sleep(self.NEEDED_PROPERTIES_DELAY)
            finally:
                delay.release()
                if self._delay_check is delay:
                    self._delay_check = None
            await wait_all([self._sync.refresh(p) for p in self.NEEDED_PROPERTIES])
            if self.id and self.menu_path:
                break
        return bool(self.id and self.menu_path)

    async def _ensure_needed_properties(self) -> None:
        try:
            await self._check_needed_properties()
        except Cancelled:
            pass
        except Exception as e:
            self.logger.warning(f"{self._unique_id}, impossible to get basic properties: {e}")
            self._cancellable.create_task(self.check_alive())

    def _name_owner_changed(self) -> None:
        if self._destroyed:
            return
        self._reset_needed_properties()
        if not self.has_name_owner:
            self._sync.cancel_refreshes()
            self.check_if_ready()
            self._emit("name-owner-changed")
        else:
            self._cancellable.create_task(self._name_owner_appeared())

    async def _name_owner_appeared(self) -> None:
        await self._ensure_needed_properties()
        self._emit("name-owner-changed")

    def _on_proxy_signal(self, signal: str, params: typing.Sequence[typing.Any]) -> None:
        if not self._destroyed:
            self._sync.on_signal(signal, params)

    def _on_properties_changed(
        self, changed: typing.Mapping[str, typing.Any], invalidated: typing.Sequence[str]
    ) -> None:
        if self._destroyed:
            return
        signals_to_emit: typing.Dict[str, None] = {}
        ready_changed: typing.Optional[bool] = None

        def check_if_ready_changed() -> bool:
            nonlocal ready_changed
            if ready_changed is None:
                ready_changed = self.check_if_ready()
            return ready_changed

        for prop in changed:
            if prop == "Id":
                check_if_ready_changed()
            if prop.startswith("Icon") or prop.startswith("AttentionIcon"):
                signals_to_emit["icon"] = None
            if prop.startswith("OverlayIcon"):
                signals_to_emit["overlay-icon"] = None
            if prop == "IconThemePath":
                signals_to_emit["icon"] = None
                signals_to_emit["overlay-icon"] = None
            if prop == "XAyatanaLabel":
                signals_to_emit["label"] = None
            if prop == "Menu":
                if not check_if_ready_changed() and self.is_ready:
                    signals_to_emit["menu"] = None
            if prop in ("IconAccessibleDesc", "AttentionAccessibleDesc", "Title"):
                signals_to_emit["accessible-name"] = None
            if prop == "Status":
                # status picks both the icon set and the description
                for signal in ("icon", "overlay-icon", "status", "accessible-name"):
                    signals_to_emit[signal] = None

        for signal in signals_to_emit:
            self._emit(signal)

    @property
    def unique_id(self) -> str:
        return self._unique_id

    @property
    def cancellable(self) -> Cancellable:
        return self._cancellable

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def is_ready(self) -> bool:
        return self._readiness.is_ready

    @property
    def has_name_owner(self) -> bool:
        return self.proxy.has_name_owner

    @property
    def id(self) -> typing.Optional[str]:
        return self.proxy.properties.id

    @property
    def title(self) -> typing.Optional[str]:
        return self.proxy.properties.title

    @property
    def status(self) -> typing.Optional[str]:
        return self.proxy.properties.status

    @property
    def label(self) -> typing.Optional[str]:
        return self.proxy.properties.label

    @property
    def label_guide(self) -> typing.Optional[str]:
        return self.proxy.properties.label_guide

    @property
    def ordering_index(self) -> typing.Optional[int]:
        return self.proxy.properties.ordering_index

    @property
    def menu_path(self) -> typing.Optional[str]:
        return self.proxy.properties.menu

    @property
    def accessible_name(self) -> typing.Optional[str]:
        if self.status == NEEDS_ATTENTION:
            desc = self.proxy.properties.get("AttentionAccessibleDesc")
        else:
            desc = self.proxy.properties.get("IconAccessibleDesc")
        return desc or self.title

    @property
    def icon(self) -> IconTriple:
        return self.proxy.properties.icon_triple("Icon")

    @property
    def attention_icon(self) -> IconTriple:
        return self.proxy.properties.icon_triple("AttentionIcon")

    @property
    def overlay_icon(self) -> IconTriple:
        return self.proxy.properties.icon_triple("OverlayIcon")

    @property
    def supported_properties(self) -> typing.List[str]:
        return list(self._sync.supported_properties)

    @property
    def command_line(self) -> typing.Optional[str]:
        return self._command_line

    def supports(self, member: str) -> typing.Optional[bool]:
        """What the peer said about an optional method, None if never tried."""
        return self._capabilities.get(member)

    async def check_alive(self) -> None:
        await self._liveness.check_alive()

    def reset(self) -> None:
        self._emit("reset")

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._emit("destroy")
        self._destroyed = True
        self._events.block()
        self._liveness.cancel()
        self._cancellable.cancel()
        self._sync.cancel_refreshes()
        self.proxy.close()

    async def _call(self, member: str, signature: str, *args: typing.Any) -> typing.Any:
        return await self._cancellable.run(
            self.proxy.call_method(member, signature, *args)
        )

    async def _call_optional(self, member: str, signature: str, *args: typing.Any) -> bool:
        """
        Calls an optional method. Returns False without calling when the peer
        already answered UnknownMethod for it; any other failure is raised.
        """
        if self._capabilities.get(member) is False:
            return False
        try:
            await self._call(member, signature, *args)
        except Cancelled:
            raise
        except Exception as e:
            if is_unknown_method(e):
                self._capabilities[member] = False
                self.logger.debug(f"{self._unique_id}: {member} is not supported")
                return False
            raise
        self._capabilities[member] = True
        return True

    async def provide_activation_token(self, timestamp: int) -> None:
        if self._capabilities.get(PROVIDE_ACTIVATION_TOKEN) is False:
            return
        token = self._launch_context.get_startup_notify_id(
            self._command_line or "true", self.id, timestamp
        )
        try:
            if not await self._call_optional(PROVIDE_ACTIVATION_TOKEN, "s", token):
                self._launch_context.launch_failed(token)
        except Cancelled:
            self._launch_context.launch_failed(token)
        except Exception as e:
            self._launch_context.launch_failed(token)
            self.logger.warning(f"{self.id}, failed to provide activation token: {e}")

    async def open(self, x: int, y: int, timestamp: int) -> None:
        # x and y are only "a hint to the item where to show eventual windows".
        try:
            await self.provide_activation_token(timestamp)
            activated = await self._call_optional("Activate", "ii", int(x), int(y))
            if not activated and self.supports_activation is not False:
                self.logger.warning(f"{self.id}, does not support activation")
            self.supports_activation = activated
        except Cancelled:
            pass
        except Exception as e:
            self.logger.critical(f"{self.id}, failed to activate: {e}")

    async def secondary_activate(self, timestamp: int, x: int, y: int) -> None:
        try:
            await self.provide_activation_token(timestamp)
            if not await self._call_optional(
                "XAyatanaSecondaryActivate", "u", timestamp & 0xFFFFFFFF
            ):
                await self._call_optional("SecondaryActivate", "ii", int(x), int(y))
        except Cancelled:
            pass
        except Exception as e:
            self.logger.critical(f"{self.id}, failed to secondary activate: {e}")

    async def context_menu(self, x: int, y: int) -> None:
        try:
            await self._call_optional("ContextMenu", "ii", int(x), int(y))
        except Cancelled:
            pass
        except Exception as e:
            self.logger.critical(f"{self.id}, failed to show context menu: {e}")

    async def scroll(self, dx: float, dy: float) -> None:
        actions = []
        if dx != 0:
            actions.append(self._call_optional("Scroll", "is", math.floor(dx), "horizontal"))
        if dy != 0:
            actions.append(self._call_optional("Scroll", "is", math.floor(dy), "vertical"))
        try:
            await wait_all(actions)
        except Cancelled:
            pass
        except Exception as e:
            self.logger.critical(f"{self.id}, failed to scroll: {e}")
