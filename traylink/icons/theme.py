import os
import typing
from xdg import Exceptions as xdg_exceptions
from xdg import IconTheme as xdg_icon_theme
from xdg.BaseDirectory import xdg_data_dirs
from traylink.core.log_setup import get_logger
from traylink.shared.events import EventEmitter

ICON_EXTENSIONS: typing.Final[typing.Tuple[str, ...]] = ("png", "svg", "xpm")
FALLBACK_THEME: typing.Final[str] = "hicolor"


class IconThemeSource(typing.Protocol):
    def lookup_icon(self, name: str, size: int, scale: int = 1) -> typing.Optional[str]: ...

    def get_search_path(self) -> typing.List[str]: ...

    def with_search_path(self, extra: str) -> "IconThemeSource": ...

    def connect(self, event: str, callback: typing.Callable[..., typing.Any]) -> int: ...

    def disconnect(self, handler_id: int) -> bool: ...


def default_search_path() -> typing.List[str]:
    """Icon directories in XDG order, followed by the legacy pixmaps dir."""
    data_home, *data_dirs = xdg_data_dirs
    paths = [os.path.join(data_home, "icons"), os.path.expanduser("~/.icons")]
    paths.extend(os.path.join(d, "icons") for d in data_dirs)
    paths.append("/usr/share/pixmaps")
    return list(dict.fromkeys(paths))


def fallback_names(name: str) -> typing.List[str]:
    """audio-volume-high-panel, audio-volume-high, audio-volume, audio."""
    names = [name]
    while "-" in name:
        name = name.rsplit("-", 1)[0]
        if name:
            names.append(name)
    return names


def _forget_xdg_lookups() -> None:
    """pyxdg caches parsed themes and directory listings for a few seconds."""
    xdg_icon_theme.themes = []
    xdg_icon_theme.theme_cache.clear()
    xdg_icon_theme.dir_cache.clear()
    xdg_icon_theme.icon_cache.clear()


def _use_search_path(search_path: typing.List[str]) -> None:
    # pyxdg reads its search path from a module level list
    if xdg_icon_theme.icondirs == search_path:
        return
    xdg_icon_theme.icondirs[:] = search_path
    _forget_xdg_lookups()


class SearchPathIconTheme:
    """
    Icon lookup through pyxdg over an explicit search path.

    pyxdg reads ``index.theme`` of the current theme and of hicolor, picks
    the directory matching the size (or the closest one) and finally looks
    for loose ``<name>.<ext>`` files in the search path entries. Names that
    are not found are retried with their trailing ``-segment`` stripped.
    """

    def __init__(
        self,
        search_path: typing.Optional[typing.Sequence[str]] = None,
        theme_name: str = FALLBACK_THEME,
    ):
        self.logger = get_logger(__name__)
        self._search_path = list(search_path) if search_path is not None else default_search_path()
        self._theme_name = theme_name
        self._lookups: typing.Dict[typing.Tuple[str, int], typing.Optional[str]] = {}
        self._events = EventEmitter(("changed",), owner="icon-theme")

    def connect(self, event: str, callback: typing.Callable[..., typing.Any]) -> int:
        return self._events.connect(event, callback)

    def disconnect(self, handler_id: int) -> bool:
        return self._events.disconnect(handler_id)

    @property
    def theme_name(self) -> str:
        return self._theme_name

    def set_theme_name(self, theme_name: str) -> None:
        if theme_name == self._theme_name:
            return
        self._theme_name = theme_name
        self.rescan()

    def get_search_path(self) -> typing.List[str]:
        return list(self._search_path)

    def append_search_path(self, path: str) -> None:
        if path not in self._search_path:
            self._search_path.append(path)
            self.rescan()

    def with_search_path(self, extra: str) -> "SearchPathIconTheme":
        """A separate theme that searches extra first; self is left untouched."""
        search_path = [extra] + [p for p in self._search_path if p != extra]
        return SearchPathIconTheme(search_path, self._theme_name)

    def rescan(self) -> None:
        """Forget previous lookups, e.g. after icons got installed."""
        self._lookups.clear()
        _forget_xdg_lookups()
        self._events.emit("changed")

    def lookup_icon(self, name: str, size: int, scale: int = 1) -> typing.Optional[str]:
        target = size * max(scale, 1)
        key = (name, target)
        if key not in self._lookups:
            self._lookups[key] = self._lookup_uncached(name, target)
        return self._lookups[key]

    def _lookup_uncached(self, name: str, target: int) -> typing.Optional[str]:
        _use_search_path(self._search_path)
        for candidate in fallback_names(name):
            try:
                path = xdg_icon_theme.getIconPath(
                    candidate, target, self._theme_name, list(ICON_EXTENSIONS)
                )
            except (OSError, xdg_exceptions.Error) as e:
                self.logger.debug(f"Unable to look up icon {candidate}: {e}")
                continue
            if path:
                return path
        return None
