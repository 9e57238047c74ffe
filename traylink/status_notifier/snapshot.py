import typing

NO_DBUSMENU: typing.Final[str] = "/NO_DBUSMENU"

PASSIVE: typing.Final[str] = "Passive"
ACTIVE: typing.Final[str] = "Active"
NEEDS_ATTENTION: typing.Final[str] = "NeedsAttention"

Pixmap = typing.Sequence[typing.Tuple[int, int, bytes]]
IconTriple = typing.Tuple[typing.Optional[str], typing.Optional[Pixmap], typing.Optional[str]]


def normalize_menu_path(value: typing.Any) -> typing.Optional[str]:
    """Maps the "no menu" sentinel and empty paths to None."""
    if not value or value in (NO_DBUSMENU, "/"):
        return None
    return str(value)


class PropertySnapshot:
    """
    Last known values of the remote item's properties.

    Only names in ``allowed`` are ever stored, everything else a peer sends is
    dropped. ``None`` means "unknown" and removes the entry.
    """

    def __init__(self, allowed: typing.Iterable[str]):
        self._allowed = frozenset(allowed)
        self._values: typing.Dict[str, typing.Any] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._values

    def accepts(self, name: str) -> bool:
        return name in self._allowed

    def get(self, name: str, default: typing.Any = None) -> typing.Any:
        return self._values.get(name, default)

    def set(self, name: str, value: typing.Any) -> bool:
        """Stores value, returns False when the name is not a known property."""
        if name not in self._allowed:
            return False
        if value is None:
            self._values.pop(name, None)
        else:
            self._values[name] = value
        return True

    def clear(self) -> None:
        self._values.clear()

    def names(self) -> typing.List[str]:
        return list(self._values)

    @property
    def id(self) -> typing.Optional[str]:
        return self._values.get("Id") or None

    @property
    def title(self) -> typing.Optional[str]:
        return self._values.get("Title")

    @property
    def status(self) -> typing.Optional[str]:
        return self._values.get("Status")

    @property
    def menu(self) -> typing.Optional[str]:
        return normalize_menu_path(self._values.get("Menu"))

    @property
    def icon_theme_path(self) -> typing.Optional[str]:
        return self._values.get("IconThemePath") or None

    @property
    def label(self) -> typing.Optional[str]:
        return self._values.get("XAyatanaLabel")

    @property
    def label_guide(self) -> typing.Optional[str]:
        return self._values.get("XAyatanaLabelGuide")

    @property
    def ordering_index(self) -> typing.Optional[int]:
        return self._values.get("XAyatanaOrderingIndex")

    def icon_triple(self, prefix: str) -> IconTriple:
        """(name, pixmaps, theme path) for the Icon/AttentionIcon/OverlayIcon set."""
        return (
            self._values.get(f"{prefix}Name") or None,
            self._values.get(f"{prefix}Pixmap") or None,
            self.icon_theme_path,
        )
