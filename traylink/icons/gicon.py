import dataclasses
import typing


@dataclasses.dataclass
class FileIcon:
    """
    A themed icon file, loaded by whoever paints it.

    ``in_use`` is set while a consumer displays the icon and cleared the moment
    it stops doing so; the cache disposes only icons that are not in use.
    """

    path: str
    in_use: bool = dataclasses.field(default=False, compare=False)


@dataclasses.dataclass(frozen=True)
class Emblem:
    icon: typing.Any


class EmblemedIcon:
    """Base icon plus the emblems painted on top of it."""

    def __init__(self, icon: typing.Any):
        self.icon = icon
        self._emblems: typing.List[Emblem] = []

    @property
    def emblems(self) -> typing.List[Emblem]:
        return list(self._emblems)

    def add_emblem(self, emblem: Emblem) -> None:
        self._emblems.append(emblem)

    def clear_emblems(self) -> None:
        self._emblems.clear()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EmblemedIcon):
            return NotImplemented
        return self.icon == other.icon and self._emblems == other._emblems

    def __repr__(self) -> str:
        return f"EmblemedIcon({self.icon!r}, emblems={self._emblems!r})"
