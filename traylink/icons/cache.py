import typing
from traylink.core.log_setup import get_logger
from .gicon import FileIcon


class IconCache:
    """
    Resolved icons keyed by their load id.

    Eviction is immediate, disposal is not: an evicted image still displayed
    by a consumer is disposed only when that consumer releases it. Images
    that were never cached are disposed on release as well, since the
    consumer was their only owner.
    """

    def __init__(self):
        self.logger = get_logger(__name__)
        self._cache: typing.Dict[str, typing.Any] = {}
        self._use_counts: typing.Dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, icon_id: str) -> bool:
        return icon_id in self._cache

    def get(self, icon_id: str) -> typing.Any:
        return self._cache.get(icon_id)

    def add(self, icon_id: str, image: typing.Any) -> typing.Any:
        """Stores image under icon_id and returns the instance to use."""
        previous = self._cache.get(icon_id)
        if previous is image:
            return image
        if previous is not None and previous == image:
            self._dispose_if_unused(image)
            return previous
        self._cache[icon_id] = image
        if previous is not None:
            self._dispose_if_unused(previous)
        return image

    def is_cached(self, image: typing.Any) -> bool:
        return any(cached is image for cached in self._cache.values())

    def is_in_use(self, image: typing.Any) -> bool:
        return self._use_counts.get(id(image), 0) > 0

    def use(self, image: typing.Any) -> None:
        """Called by the consumer when it starts displaying image."""
        key = id(image)
        self._use_counts[key] = self._use_counts.get(key, 0) + 1
        if isinstance(image, FileIcon):
            image.in_use = True

    def release(self, image: typing.Any) -> None:
        """Called by the consumer exactly when image stops being displayed."""
        key = id(image)
        count = self._use_counts.get(key, 0) - 1
        if count > 0:
            self._use_counts[key] = count
            return
        self._use_counts.pop(key, None)
        if isinstance(image, FileIcon):
            image.in_use = False
        self._dispose_if_unused(image)

    def _dispose_if_unused(self, image: typing.Any) -> None:
        if self.is_in_use(image) or self.is_cached(image):
            return
        close = getattr(image, "close", None)
        if callable(close):
            try:
                close()
            except Exception as e:
                self.logger.warning(f"Failed disposing icon {image!r}: {e}")

    def clear(self) -> None:
        images = list(self._cache.values())
        self._cache.clear()
        for image in images:
            self._dispose_if_unused(image)

    def destroy(self) -> None:
        self.clear()
        self._use_counts.clear()
