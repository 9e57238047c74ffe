import re
import typing
from io import BytesIO
import cairosvg
import cairosvg.parser
from PIL import Image, UnidentifiedImageError
from traylink.core.log_setup import get_logger
from traylink.errors import Cancelled, IconLoadPending, InvalidImageError
from traylink.shared.concurrency_helper import Cancellable
from .cache import IconCache
from .gicon import FileIcon
from .load_slots import IconType, LoadSlotManager
from .pixmap import Pixmap, argb_to_rgba, pick_pixmap
from .theme import IconThemeSource

STRIP_RATIO: typing.Final[float] = 1.5
SVG_EXTENSIONS: typing.Final[typing.Tuple[str, ...]] = (".svg", ".svgz")

_SVG_LENGTH_RE = re.compile(r"^([0-9]*\.?[0-9]+)\s*(px|pt|pc|mm|cm|in)?$")
_SVG_UNITS: typing.Final[typing.Dict[str, float]] = {
    "px": 1.0,
    "pt": 96 / 72,
    "pc": 16.0,
    "mm": 96 / 25.4,
    "cm": 96 / 2.54,
    "in": 96.0,
}

ResolvedIcon = typing.Union[FileIcon, Image.Image]


def _is_svg(path: str) -> bool:
    return path.lower().endswith(SVG_EXTENSIONS)


def _open_image(path: str) -> Image.Image:
    if _is_svg(path):
        return Image.open(BytesIO(cairosvg.svg2png(url=path)))
    return Image.open(path)


def _svg_length(value: typing.Optional[str], fallback: float) -> float:
    if not value:
        return fallback
    match = _SVG_LENGTH_RE.match(value.strip())
    if not match:
        return fallback
    number, unit = match.groups()
    return float(number) * _SVG_UNITS[unit or "px"]


def read_svg_size(path: str) -> typing.Tuple[int, int]:
    """Size declared by the root element; percentages fall back to the viewBox."""
    tree = cairosvg.parser.Tree(url=path)
    viewbox = [float(v) for v in re.split(r"[\s,]+", tree.get("viewBox", "").strip()) if v]
    box_width, box_height = viewbox[2:4] if len(viewbox) == 4 else (0.0, 0.0)
    width = _svg_length(tree.get("width"), box_width)
    height = _svg_length(tree.get("height"), box_height)
    return round(width), round(height)


def read_image_info(path: str) -> typing.Tuple[typing.Optional[str], int, int]:
    """
    Format and native size of an image file, without decoding the pixels.
    A size of 0x0 means the file does not declare one.
    """
    if _is_svg(path):
        return ("SVG", *read_svg_size(path))
    try:
        with Image.open(path) as img:
            width, height = img.size
            return (img.format, width, height)
    except UnidentifiedImageError:
        return (None, 0, 0)


def load_image(path: str) -> Image.Image:
    with _open_image(path) as img:
        return img.convert("RGBA")


class IconResolver:
    """
    Turns an item's icon description into something paintable.

    A name is looked up in the icon theme (absolute paths are taken as they
    are); what it points to becomes a FileIcon, unless it is a horizontal
    strip, which is decoded to keep its native width. Without a usable name
    the best fitting pixmap is converted to an RGBA image. Themed results are
    cached by load id, pixmap results never are: their pixels change without
    the id changing.
    """

    def __init__(
        self,
        theme: IconThemeSource,
        owner_id: str = "",
        scale_factor: int = 1,
    ):
        self.theme = theme
        self.owner_id = owner_id
        self.scale_factor = scale_factor
        self.logger = get_logger(__name__)
        self.cache = IconCache()
        self.slots = LoadSlotManager(owner_id)

    def invalidate(self) -> None:
        """Empties the cache and cancels every load, synchronously."""
        self.cache.clear()
        self.slots.cancel_all()

    def destroy(self) -> None:
        self.slots.cancel_all()
        self.cache.destroy()

    def themed_id(
        self,
        icon_type: IconType,
        name: str,
        size: int,
        theme_path: typing.Optional[str],
    ) -> str:
        return f"{icon_type.slot.name}:{name}@{size * self.scale_factor}:{theme_path or ''}"

    def icon_path(
        self, name: str, theme_path: typing.Optional[str], size: int
    ) -> typing.Optional[str]:
        if not name:
            return None
        if name.startswith("/"):
            # Not allowed by the protocol, still some indicators send paths.
            return name

        # indicator-application looks up a special "panel" variant first
        panel_name = f"{name}-panel"
        theme = self.theme.with_search_path(theme_path) if theme_path else self.theme
        path = theme.lookup_icon(panel_name, size, self.scale_factor)
        if path is None:
            where = f"path {theme_path}" if theme_path else "default theme"
            self.logger.warning(
                f"{self.owner_id}, Impossible to lookup icon for '{panel_name}' in {where}"
            )
        return path

    async def resolve(
        self,
        name: typing.Optional[str],
        pixmaps: typing.Optional[typing.Sequence[Pixmap]],
        theme_path: typing.Optional[str],
        icon_type: IconType,
        size: int,
        join: bool = False,
    ) -> typing.Optional[ResolvedIcon]:
        """
        Resolves one icon, None when nothing usable was found. Cancellation
        and ``IconLoadPending`` are raised to the caller; other failures are
        logged and end as None.
        """
        icon_type = icon_type.slot
        if name:
            icon = await self._cache_or_create_by_name(
                icon_type, size, name, theme_path, join
            )
            if icon is not None:
                return icon
        if pixmaps:
            return await self._create_from_pixmap(icon_type, size, pixmaps, join)
        return None

    async def _cache_or_create_by_name(
        self,
        icon_type: IconType,
        size: int,
        name: str,
        theme_path: typing.Optional[str],
        join: bool,
    ) -> typing.Optional[ResolvedIcon]:
        load_id = self.themed_id(icon_type, name, size, theme_path)
        cached = self.cache.get(load_id)
        if cached is not None:
            return cached

        path = self.icon_path(name, theme_path, size)
        if not path:
            return None

        icon = await self.slots.run(
            icon_type,
            load_id,
            lambda cancellable: self._create_by_path(path, cancellable),
            join=join,
        )
        if icon is not None:
            icon = self.cache.add(load_id, icon)
        return icon

    async def _create_by_path(
        self, path: str, cancellable: Cancellable
    ) -> typing.Optional[ResolvedIcon]:
        try:
            image_format, width, height = await cancellable.run_in_executor(
                read_image_info, path
            )
        except Cancelled:
            raise
        except Exception as e:
            self.logger.warning(
                f"{self.owner_id}, Impossible to read image info from path '{path}': {e}"
            )
            return None

        if not image_format:
            self.logger.critical(f"{self.owner_id}, Invalid image format: {path}")
            return None

        if height > 0 and width >= height * STRIP_RATIO:
            # Hello indicator-multiload!
            try:
                return await cancellable.run_in_executor(load_image, path)
            except Cancelled:
                raise
            except Exception as e:
                self.logger.warning(
                    f"{self.owner_id}, Impossible to read image from path '{path}': {e}"
                )
                return None
        return FileIcon(path)

    async def _create_from_pixmap(
        self,
        icon_type: IconType,
        size: int,
        pixmaps: typing.Sequence[Pixmap],
        join: bool,
    ) -> typing.Optional[Image.Image]:
        pixmap = pick_pixmap(pixmaps, size * self.scale_factor)
        if pixmap is None:
            self.logger.debug(f"{self.owner_id}, Empty icon pixmap found")
            return None
        width, height, data = pixmap
        load_id = f"{icon_type.name}@{width}x{height}"
        try:
            return await self.slots.run(
                icon_type,
                load_id,
                lambda cancellable: self._pixmap_to_image(width, height, data, cancellable),
                join=join,
            )
        except (Cancelled, IconLoadPending):
            raise
        except Exception as e:
            # the image data was probably bogus, it does happen
            self.logger.warning(f"{self.owner_id}, Impossible to create image from data: {e}")
            return None

    async def _pixmap_to_image(
        self, width: int, height: int, data: bytes, cancellable: Cancellable
    ) -> Image.Image:
        if width <= 0 or height <= 0 or len(data) != width * height * 4:
            raise InvalidImageError(
                f"Pixmap of {width}x{height} carries {len(data)} bytes"
            )
        rgba = await argb_to_rgba(data, cancellable)
        return Image.frombytes("RGBA", (width, height), bytes(rgba))


def is_strip(icon: typing.Any) -> bool:
    return isinstance(icon, Image.Image) and icon.width >= icon.height * STRIP_RATIO


