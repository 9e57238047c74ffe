import typing
from dbus_fast.aio import MessageBus
from traylink.core.log_setup import get_logger
from .activation import LaunchContext
from .item import StatusNotifierItem

ItemCallback = typing.Callable[[StatusNotifierItem], typing.Any]


class StatusNotifierHost:
    """
    Keeps the live StatusNotifierItem objects, keyed by their unique id.
    Items drop out of the registry on their own when they are destroyed.
    """

    def __init__(self, launch_context: typing.Optional[LaunchContext] = None):
        self.items: typing.Dict[str, StatusNotifierItem] = {}
        self.launch_context = launch_context
        self.logger = get_logger(__name__)
        self._on_item_added: typing.List[ItemCallback] = []
        self._on_item_removed: typing.List[ItemCallback] = []
        self._destroy_handlers: typing.Dict[str, int] = {}

    def on_item_added(self, callback: ItemCallback) -> None:
        self._on_item_added.append(callback)

    def on_item_removed(self, callback: ItemCallback) -> None:
        self._on_item_removed.append(callback)

    def _notify(self, callbacks: typing.List[ItemCallback], item: StatusNotifierItem) -> None:
        for callback in callbacks:
            try:
                callback(item)
            except Exception as e:
                self.logger.error(
                    f"Error invoking item callback for {item.unique_id}: {e}",
                    exc_info=True,
                )

    def register_item(
        self, bus: MessageBus, service: str, bus_name: str, object_path: str
    ) -> StatusNotifierItem:
        """Register a new StatusNotifierItem backed by the given connection."""
        item = StatusNotifierItem.for_bus(
            bus, service, bus_name, object_path, self.launch_context
        )
        return self.add_item(item)

    def add_item(self, item: StatusNotifierItem) -> StatusNotifierItem:
        existing = self.items.get(item.unique_id)
        if existing is item:
            return item
        if existing is not None:
            self.logger.info(f"Replacing tray item {item.unique_id}")
            self.unregister_item(item.unique_id)

        self.items[item.unique_id] = item
        self._destroy_handlers[item.unique_id] = item.connect(
            "destroy", self._on_item_destroyed
        )
        self.logger.info(f"Registered tray item {item.unique_id}")
        self._notify(self._on_item_added, item)
        return item

    def _on_item_destroyed(self, item: StatusNotifierItem) -> None:
        if self.items.get(item.unique_id) is not item:
            return
        self._forget(item)

    def _forget(self, item: StatusNotifierItem) -> None:
        del self.items[item.unique_id]
        handler_id = self._destroy_handlers.pop(item.unique_id, None)
        if handler_id is not None:
            item.disconnect(handler_id)
        self.logger.info(f"Removing tray item {item.unique_id}")
        self._notify(self._on_item_removed, item)

    def unregister_item(self, unique_id: str) -> bool:
        """
        Unregister an item and destroy it.
        Args:
            unique_id (str): The id the item was registered under.
        """
        item = self.items.get(unique_id)
        if item is None:
            self.logger.warning(f"Tray item not registered: {unique_id}")
            return False
        self._forget(item)
        item.destroy()
        return True

    def get_item(self, unique_id: str) -> typing.Optional[StatusNotifierItem]:
        return self.items.get(unique_id)

    def destroy(self) -> None:
        for unique_id in list(self.items):
            self.unregister_item(unique_id)
        self._on_item_added.clear()
        self._on_item_removed.clear()
