import math
import re
import typing
from traylink.core.log_setup import get_logger
from traylink.errors import Cancelled, IconLoadPending
from traylink.shared.concurrency_helper import Cancellable
from traylink.shared.config_handler import ConfigHandler
from traylink.shared.events import EventEmitter
from traylink.status_notifier.item import StatusNotifierItem
from traylink.status_notifier.snapshot import NEEDS_ATTENTION, PASSIVE, IconTriple
from .gicon import Emblem, EmblemedIcon
from .load_slots import IconType
from .resolver import IconResolver, ResolvedIcon, is_strip
from .theme import IconThemeSource

# KDE hardcodes the overlay icon to 10px for a 16px icon; keep that ratio.
OVERLAY_RATIO: typing.Final[float] = 1.6


class IconActor:
    """
    Render node for one item: keeps ``gicon`` (the base icon with the overlay
    as its emblem) in sync with the item, the settings and the icon theme.
    Subscribers of ``changed`` are told whenever ``gicon`` is replaced.
    """

    def __init__(
        self,
        item: StatusNotifierItem,
        icon_size: int,
        theme: IconThemeSource,
        settings: typing.Optional[ConfigHandler] = None,
        scale_factor: int = 1,
    ):
        self.logger = get_logger(__name__)
        self._item = item
        self._theme = theme
        self._settings = settings
        self._icon_size = icon_size
        self._base_icon_size = icon_size
        self._default_icon_size: typing.Optional[int] = None
        self._custom_icons: typing.Dict[IconType, str] = {}
        self._emblem: typing.Optional[Emblem] = None
        self._cancellable = Cancellable(name=f"icon {item.unique_id}")
        self._events = EventEmitter(("changed",), owner=f"icon {item.unique_id}")
        self._destroyed = False
        self.resolver = IconResolver(theme, item.unique_id, scale_factor)
        self.gicon: typing.Optional[EmblemedIcon] = None
        self.icon_size = icon_size
        self.height = icon_size * scale_factor
        self.style_classes: typing.Set[str] = {
            "system-status-icon",
            "appindicator-icon",
            "status-notifier-icon",
        }

        self._item_handlers = [
            item.connect("icon", lambda _item: self._schedule(self.update_icon())),
            item.connect(
                "overlay-icon", lambda _item: self._schedule(self.update_overlay_icon())
            ),
            item.connect("reset", lambda _item: self.invalidate()),
            item.connect("ready", lambda _item: self._on_ready()),
            item.connect("destroy", lambda _item: self.destroy()),
        ]
        self._theme_handler = theme.connect("changed", self.invalidate)
        self._settings_handlers: typing.List[int] = []
        if settings is not None:
            self._settings_handlers = [
                settings.connect("changed::icon-size", self.invalidate),
                settings.connect("changed::custom-icons", self._on_custom_icons_changed),
            ]

        if item.is_ready:
            self._update_icon_class()
            self._update_custom_icons()
            self.invalidate()

    def connect(self, event: str, callback: typing.Callable[..., typing.Any]) -> int:
        return self._events.connect(event, callback)

    def disconnect(self, handler_id: int) -> bool:
        return self._events.disconnect(handler_id)

    @property
    def scale_factor(self) -> int:
        return self.resolver.scale_factor

    @property
    def emblem(self) -> typing.Optional[Emblem]:
        return self._emblem

    @property
    def custom_icons(self) -> typing.Dict[IconType, str]:
        return dict(self._custom_icons)

    def _schedule(self, coro: typing.Coroutine[typing.Any, typing.Any, None]) -> None:
        if self._destroyed:
            coro.close()
            return
        self._cancellable.create_task(coro)

    def _on_ready(self) -> None:
        self._update_icon_class()
        self._update_custom_icons()
        self.invalidate()

    def _on_custom_icons_changed(self) -> None:
        self._update_custom_icons()
        self.invalidate()

    def _update_icon_class(self) -> None:
        if not self._item.id:
            return
        suffix = re.sub(r"_|\s", "-", self._item.id.lower())
        self.style_classes.add(f"appindicator-icon-{suffix}")

    def _update_custom_icons(self) -> None:
        self._custom_icons.clear()
        if self._settings is None:
            return
        for indicator_id, normal_icon, attention_icon in self._settings.get_custom_icons():
            if self._item.id == indicator_id:
                self._custom_icons[IconType.NORMAL] = normal_icon
                self._custom_icons[IconType.ATTENTION] = attention_icon

    def _update_icon_size(self) -> None:
        size_value = self._settings.get_icon_size() if self._settings is not None else 0
        if size_value > 0:
            if self._default_icon_size is None:
                self._default_icon_size = self._icon_size
            self._icon_size = size_value
        elif self._default_icon_size is not None:
            self._icon_size = self._default_icon_size
            self._default_icon_size = None

    def set_scale_factor(self, scale_factor: int) -> None:
        if scale_factor == self.resolver.scale_factor:
            return
        self.resolver.scale_factor = scale_factor
        self.height = self._base_icon_size * scale_factor
        self.invalidate()

    def invalidate(self) -> None:
        """Drops every cached icon and in-flight load, then resolves again."""
        if self._destroyed:
            return
        self.resolver.invalidate()
        self._schedule(self.update_icon())
        self._schedule(self.update_overlay_icon())

    def _icon_for_type(self, icon_type: IconType) -> IconTriple:
        if icon_type is IconType.ATTENTION:
            return self._item.attention_icon
        if icon_type is IconType.OVERLAY:
            return self._item.overlay_icon
        return self._item.icon

    async def update_icon(self) -> None:
        status = self._item.status
        if status == PASSIVE:
            return
        # the attention icon has precedence over the normal one
        icon_type = IconType.ATTENTION if status == NEEDS_ATTENTION else IconType.NORMAL
        self._update_icon_size()
        try:
            await self._update_icon_by_type(icon_type, self._icon_size)
        except (Cancelled, IconLoadPending):
            pass
        except Exception as e:
            self.logger.error(
                f"{self._item.id}: Updating icon type {icon_type.name} failed: {e}",
                exc_info=True,
            )

    async def update_overlay_icon(self) -> None:
        if self._item.status == PASSIVE:
            return
        icon_size = math.floor(self._icon_size / OVERLAY_RATIO)
        try:
            await self._update_icon_by_type(IconType.OVERLAY, icon_size)
        except (Cancelled, IconLoadPending):
            pass
        except Exception as e:
            self.logger.error(
                f"{self._item.id}: Updating overlay icon failed: {e}", exc_info=True
            )

    async def _update_icon_by_type(self, icon_type: IconType, icon_size: int) -> None:
        name, pixmaps, theme_path = self._icon_for_type(icon_type)
        if self._custom_icons:
            custom_icon = self._custom_icons.get(icon_type)
            icon = await self._create_and_set_icon(
                custom_icon, None, theme_path, icon_type, icon_size
            )
            if icon is None and icon_type is not IconType.OVERLAY:
                await self._create_and_set_icon(
                    self._custom_icons.get(IconType.NORMAL),
                    None,
                    theme_path,
                    icon_type,
                    icon_size,
                )
            return
        await self._create_and_set_icon(name, pixmaps, theme_path, icon_type, icon_size)

    async def _create_and_set_icon(
        self,
        name: typing.Optional[str],
        pixmaps: typing.Any,
        theme_path: typing.Optional[str],
        icon_type: IconType,
        icon_size: int,
    ) -> typing.Optional[ResolvedIcon]:
        icon = None
        try:
            icon = await self.resolver.resolve(
                name, pixmaps, theme_path, icon_type, icon_size
            )
        except (Cancelled, IconLoadPending) as e:
            self.logger.debug(f"{self._item.id}, Impossible to load icon: {e}")
            raise
        except Exception as e:
            what = "icon emblem" if icon_type is IconType.OVERLAY else "icon"
            self.logger.error(
                f"unable to update {what} for {self._item.id}: {e}", exc_info=True
            )
        self._set_gicon(icon_type, icon, icon_size)
        return icon

    def _set_gicon(
        self,
        icon_type: IconType,
        icon: typing.Optional[ResolvedIcon],
        icon_size: int,
    ) -> None:
        cache = self.resolver.cache
        if icon_type is not IconType.OVERLAY:
            previous = self.gicon.icon if self.gicon is not None else None
            if icon is not None:
                self.gicon = EmblemedIcon(icon)
                self.icon_size = icon.width if is_strip(icon) else icon_size
            else:
                self.gicon = None
        else:
            previous = self._emblem.icon if self._emblem is not None else None
            self._emblem = Emblem(icon) if icon is not None else None

        if icon is not previous:
            if icon is not None:
                cache.use(icon)
            if previous is not None:
                cache.release(previous)

        if self.gicon is not None:
            if not any(emblem == self._emblem for emblem in self.gicon.emblems):
                self.gicon.clear_emblems()
                if self._emblem is not None:
                    self.gicon.add_emblem(self._emblem)

        self._events.emit("changed", self)

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        self._cancellable.cancel()
        for handler_id in self._item_handlers:
            self._item.disconnect(handler_id)
        self._theme.disconnect(self._theme_handler)
        if self._settings is not None:
            for handler_id in self._settings_handlers:
                self._settings.disconnect(handler_id)
        if self.gicon is not None:
            self.resolver.cache.release(self.gicon.icon)
        if self._emblem is not None:
            self.resolver.cache.release(self._emblem.icon)
        self.gicon = None
        self._emblem = None
        self.resolver.destroy()
        self._events.block()

    @property
    def destroyed(self) -> bool:
        return self._destroyed
