import re
import typing
from dbus_fast import DBusError, Message, Variant
from dbus_fast.aio import MessageBus
from dbus_fast.constants import MessageType
from traylink.core.log_setup import get_logger
from traylink.shared.concurrency_helper import Cancellable
from traylink.shared.events import EventEmitter
from .interfaces import InterfaceDescriptor, item_interface
from .snapshot import PropertySnapshot

DBUS_NAME: typing.Final[str] = "org.freedesktop.DBus"
DBUS_PATH: typing.Final[str] = "/org/freedesktop/DBus"
PROPERTIES_INTERFACE: typing.Final[str] = "org.freedesktop.DBus.Properties"
NAME_HAS_NO_OWNER: typing.Final[str] = "org.freedesktop.DBus.Error.NameHasNoOwner"

PROXY_EVENTS: typing.Final[typing.Tuple[str, ...]] = (
    "properties-changed",
    "signal",
    "name-owner-changed",
)

_BUS_NAME_RE = re.compile(r"^(:?[A-Za-z_\-][A-Za-z0-9_\-]*)(\.[A-Za-z_\-][A-Za-z0-9_\-]*)+$")


def is_bus_name(name: str) -> bool:
    return bool(name) and len(name) <= 255 and bool(_BUS_NAME_RE.match(name))


def indicator_id(service: str, bus_name: str, object_path: str) -> str:
    """Stable identity of an item: the well-known service name when the item
    was registered with one, else the bus name joined with the object path."""
    if service != bus_name and is_bus_name(service):
        return service
    return f"{bus_name}@{object_path}"


def unpack_variants(value: typing.Any) -> typing.Any:
    """Recursively replaces dbus_fast Variants with their plain values."""
    if isinstance(value, Variant):
        return unpack_variants(value.value)
    if isinstance(value, list):
        return [unpack_variants(v) for v in value]
    if isinstance(value, tuple):
        return tuple(unpack_variants(v) for v in value)
    if isinstance(value, dict):
        return {k: unpack_variants(v) for k, v in value.items()}
    return value


class ItemBusProxy:
    """
    Client side of one StatusNotifierItem object.

    Keeps the property snapshot and the observer plumbing; subclasses provide
    the transport. Events:
      - ``properties-changed(changed: dict, invalidated: list)``
      - ``signal(name: str, params: list)``
      - ``name-owner-changed()``
    """

    def __init__(
        self,
        bus_name: str,
        object_path: str,
        interface: typing.Optional[InterfaceDescriptor] = None,
    ):
        self.bus_name = bus_name
        self.object_path = object_path
        self.interface = interface or item_interface()
        self.properties = PropertySnapshot(self.interface.known_properties)
        self.name_owner: typing.Optional[str] = None
        self.events = EventEmitter(PROXY_EVENTS, owner=f"{bus_name}{object_path}")
        self.logger = get_logger(__name__)

    @property
    def has_name_owner(self) -> bool:
        return bool(self.name_owner)

    def connect(self, event: str, callback: typing.Callable[..., typing.Any]) -> int:
        return self.events.connect(event, callback)

    def get_cached_property(self, name: str) -> typing.Any:
        return self.properties.get(name)

    def set_cached_property(self, name: str, value: typing.Any) -> None:
        """Updates the snapshot silently, None forgets the value."""
        self.properties.set(name, value)

    def get_cached_property_names(self) -> typing.List[str]:
        return self.properties.names()

    def update_cached_properties(
        self,
        changes: typing.Mapping[str, typing.Any],
        skip_equality_check: bool = False,
    ) -> typing.Dict[str, typing.Any]:
        """
        Applies changes to the snapshot and notifies about the ones that really
        changed something. With skip_equality_check every known name counts as
        changed, needed for pixel arrays.
        """
        changed = {}
        for name, value in changes.items():
            if not self.properties.accepts(name):
                continue
            if not skip_equality_check and self.properties.get(name) == value:
                continue
            self.properties.set(name, value)
            changed[name] = value
        if changed:
            self.events.emit("properties-changed", changed, [])
        return changed

    async def init(self, cancellable: Cancellable) -> None:
        raise NotImplementedError

    async def fetch_property(self, name: str) -> typing.Any:
        """Reads one property straight from the peer, bypassing the snapshot."""
        raise NotImplementedError

    async def call_method(self, member: str, signature: str, *args: typing.Any) -> typing.Any:
        raise NotImplementedError

    async def get_connection_pid(self) -> int:
        raise NotImplementedError

    def close(self) -> None:
        self.events.block()


class DBusItemProxy(ItemBusProxy):
    """
    ItemBusProxy speaking to the peer through a dbus_fast MessageBus.

    Signals are received through a message handler filtered on the peer's bus
    name and object path; ``watch_name`` additionally tracks a well-known name
    the item was registered with.
    """

    def __init__(
        self,
        bus: MessageBus,
        bus_name: str,
        object_path: str,
        watch_name: typing.Optional[str] = None,
        interface: typing.Optional[InterfaceDescriptor] = None,
    ):
        super().__init__(bus_name, object_path, interface)
        self.bus = bus
        self.watch_name = watch_name if watch_name != bus_name else None
        self.name_on_bus = True
        self._match_rules: typing.List[str] = []
        self._handler_installed = False
        self._cancellable: typing.Optional[Cancellable] = None

    @property
    def has_name_owner(self) -> bool:
        if self.watch_name and not self.name_on_bus:
            return False
        return bool(self.name_owner)

    async def _bus_call(self, message: Message) -> typing.Any:
        reply = await self.bus.call(message)
        if reply is None:
            return None
        if reply.message_type == MessageType.ERROR:
            text = reply.body[0] if reply.body else ""
            raise DBusError(reply.error_name, text, reply)
        return reply.body

    async def _dbus_call(self, member: str, signature: str = "", body=None) -> typing.Any:
        return await self._bus_call(
            Message(
                destination=DBUS_NAME,
                interface=DBUS_NAME,
                path=DBUS_PATH,
                member=member,
                signature=signature,
                body=body or [],
            )
        )

    async def _get_name_owner(self, name: str) -> typing.Optional[str]:
        try:
            body = await self._dbus_call("GetNameOwner", "s", [name])
        except DBusError as e:
            if e.type == NAME_HAS_NO_OWNER:
                return None
            raise
        return body[0] if body else None

    async def init(self, cancellable: Cancellable) -> None:
        self._cancellable = cancellable
        self._match_rules = [
            f"type='signal',sender='{self.bus_name}',path='{self.object_path}'",
            f"type='signal',sender='{DBUS_NAME}',interface='{DBUS_NAME}',"
            f"member='NameOwnerChanged',arg0='{self.bus_name}'",
        ]
        if self.watch_name:
            self._match_rules.append(
                f"type='signal',sender='{DBUS_NAME}',interface='{DBUS_NAME}',"
                f"member='NameOwnerChanged',arg0='{self.watch_name}'"
            )
        for rule in self._match_rules:
            await cancellable.run(self._dbus_call("AddMatch", "s", [rule]))
        self.bus.add_message_handler(self._handle_message)
        self._handler_installed = True
        self.name_owner = await cancellable.run(self._get_name_owner(self.bus_name))
        if self.watch_name:
            self.name_on_bus = bool(
                await cancellable.run(self._get_name_owner(self.watch_name))
            )
        if self.name_owner:
            await cancellable.run(self._load_all_properties())

    async def _load_all_properties(self) -> None:
        body = await self._bus_call(
            Message(
                destination=self.bus_name,
                path=self.object_path,
                interface=PROPERTIES_INTERFACE,
                member="GetAll",
                signature="s",
                body=[self.interface.name],
            )
        )
        values = unpack_variants(body[0]) if body else {}
        for name, value in values.items():
            self.properties.set(name, value)

    async def fetch_property(self, name: str) -> typing.Any:
        body = await self._bus_call(
            Message(
                destination=self.bus_name,
                path=self.object_path,
                interface=PROPERTIES_INTERFACE,
                member="Get",
                signature="ss",
                body=[self.interface.name, name],
            )
        )
        return unpack_variants(body[0]) if body else None

    async def call_method(self, member: str, signature: str, *args: typing.Any) -> typing.Any:
        return await self._bus_call(
            Message(
                destination=self.bus_name,
                path=self.object_path,
                interface=self.interface.name,
                member=member,
                signature=signature,
                body=list(args),
            )
        )

    async def get_connection_pid(self) -> int:
        body = await self._dbus_call("GetConnectionUnixProcessID", "s", [self.bus_name])
        return int(body[0])

    def _is_from_peer(self, message: Message) -> bool:
        return message.sender in (self.bus_name, self.name_owner) and (
            message.path == self.object_path
        )

    def _handle_message(self, message: Message) -> None:
        if message.message_type != MessageType.SIGNAL:
            return
        try:
            if (
                message.sender == DBUS_NAME
                and message.interface == DBUS_NAME
                and message.member == "NameOwnerChanged"
            ):
                name, _old_owner, new_owner = message.body
                self._on_name_owner_changed(name, new_owner)
            elif not self._is_from_peer(message):
                return
            elif (
                message.interface == PROPERTIES_INTERFACE
                and message.member == "PropertiesChanged"
            ):
                interface_name, changed, invalidated = message.body
                if interface_name == self.interface.name:
                    self._on_properties_changed(unpack_variants(changed), invalidated)
            elif message.interface == self.interface.name:
                self.events.emit(
                    "signal", message.member, unpack_variants(list(message.body))
                )
        except Exception as e:
            self.logger.error(
                f"Error handling DBus message from {self.bus_name}: {e}", exc_info=True
            )

    def _on_properties_changed(
        self, changed: typing.Dict[str, typing.Any], invalidated: typing.List[str]
    ) -> None:
        changed = {k: v for k, v in changed.items() if self.properties.accepts(k)}
        for name, value in changed.items():
            self.properties.set(name, value)
        if changed:
            self.events.emit("properties-changed", changed, list(invalidated))
        if invalidated and self._cancellable and not self._cancellable.cancelled:
            self._cancellable.create_task(self._refetch_invalidated(list(invalidated)))

    async def _refetch_invalidated(self, names: typing.List[str]) -> None:
        changes = {}
        for name in names:
            try:
                changes[name] = await self.fetch_property(name)
            except DBusError as e:
                self.logger.debug(f"{self.bus_name}: cannot refetch {name}: {e}")
        self.update_cached_properties(changes)

    def _on_name_owner_changed(self, name: str, new_owner: str) -> None:
        if name == self.bus_name:
            self.name_owner = new_owner or None
            if self.name_owner and self._cancellable and not self._cancellable.cancelled:
                self._cancellable.create_task(self._reload_after_owner_change())
                return
        elif name == self.watch_name:
            self.name_on_bus = bool(new_owner)
        else:
            return
        self.events.emit("name-owner-changed")

    async def _reload_after_owner_change(self) -> None:
        try:
            await self._load_all_properties()
        except DBusError as e:
            self.logger.warning(f"{self.bus_name}: cannot reload properties: {e}")
        self.events.emit("name-owner-changed")

    def close(self) -> None:
        super().close()
        if self._handler_installed:
            self.bus.remove_message_handler(self._handle_message)
            self._handler_installed = False
        rules, self._match_rules = self._match_rules, []
        if rules and self.bus.connected:
            for rule in rules:
                self.bus.send(
                    Message(
                        destination=DBUS_NAME,
                        interface=DBUS_NAME,
                        path=DBUS_PATH,
                        member="RemoveMatch",
                        signature="s",
                        body=[rule],
                    )
                )
