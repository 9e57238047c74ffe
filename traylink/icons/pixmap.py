import asyncio
import typing
from traylink.errors import InvalidImageError
from traylink.shared.concurrency_helper import Cancellable

CHUNK_SIZE: typing.Final[int] = 1024

Pixmap = typing.Tuple[int, int, bytes]


def pick_pixmap(
    pixmaps: typing.Sequence[Pixmap], size: int
) -> typing.Optional[Pixmap]:
    """
    The smallest pixmap with both sides at least size, or the largest one
    when none is big enough. Pixmaps are never stretched up if avoidable.
    """
    if not pixmaps:
        return None
    by_area = sorted(pixmaps, key=lambda p: p[0] * p[1])
    for pixmap in by_area:
        if pixmap[0] >= size and pixmap[1] >= size:
            return pixmap
    return by_area[-1]


async def argb_to_rgba(
    src: typing.Union[bytes, bytearray, memoryview],
    cancellable: typing.Optional[Cancellable] = None,
    chunk_size: int = CHUNK_SIZE,
) -> bytearray:
    """
    Reorders ARGB32 pixel data (network byte order, as sent on the bus) into
    RGBA. Chunks are converted by concurrent tasks, each yielding once to the
    loop first so a big pixmap never stalls it.
    """
    if chunk_size <= 0 or chunk_size % 4:
        raise ValueError(f"Chunk size must be a positive multiple of 4, got {chunk_size}")
    src = bytes(src)
    if len(src) % 4:
        raise InvalidImageError(f"Pixel data length {len(src)} is not a multiple of 4")
    dest = bytearray(len(src))

    async def convert(start: int, end: int) -> None:
        await asyncio.sleep(0)
        if cancellable is not None and cancellable.cancelled:
            return
        dest[start:end:4] = src[start + 1 : end : 4]
        dest[start + 1 : end : 4] = src[start + 2 : end : 4]
        dest[start + 2 : end : 4] = src[start + 3 : end : 4]
        dest[start + 3 : end : 4] = src[start:end:4]

    if cancellable is not None:
        cancellable.raise_if_cancelled()
    async with asyncio.TaskGroup() as tg:
        for start in range(0, len(src), chunk_size):
            tg.create_task(convert(start, min(start + chunk_size, len(src))))
    if cancellable is not None:
        cancellable.raise_if_cancelled()
    return dest
