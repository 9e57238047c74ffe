import os
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

_GLOBAL_EXECUTOR: Optional[ThreadPoolExecutor] = None


def get_global_executor() -> ThreadPoolExecutor:
    """
    Returns the global thread pool executor.

    Only blocking file reads and image decoding are pushed here, everything
    else runs on the asyncio loop.

    Returns:
        ThreadPoolExecutor: The shared executor for blocking operations.
    """
    global _GLOBAL_EXECUTOR
    if _GLOBAL_EXECUTOR is None:
        max_workers = min(4, (os.cpu_count() or 1) + 1)
        _GLOBAL_EXECUTOR = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="TraylinkWorker"
        )
    return _GLOBAL_EXECUTOR


def shutdown_global_executor(wait: bool = True) -> None:
    """Stops the shared executor; the next call to get_global_executor()
    builds a fresh one."""
    global _GLOBAL_EXECUTOR
    if _GLOBAL_EXECUTOR is not None:
        _GLOBAL_EXECUTOR.shutdown(wait=wait, cancel_futures=True)
        _GLOBAL_EXECUTOR = None
