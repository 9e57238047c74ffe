import asyncio
import weakref
from asyncio import Task
from typing import Any, Awaitable, Callable, Coroutine, Optional, Set, TypeVar
from traylink.core._event_loop import get_global_executor
from traylink.core.log_setup import get_logger
from traylink.errors import Cancelled

T = TypeVar("T")


class Cancellable:
    """
    Cancellation token that also owns the asyncio tasks started on its behalf.

    Cancelling the token cancels every tracked task, fires the registered
    callbacks and cancels every child token. Once cancelled it stays cancelled:
    new work is refused with ``Cancelled``.
    """

    def __init__(self, parent: Optional["Cancellable"] = None, name: str = ""):
        self.name = name
        self._cancelled = False
        self._running_tasks: Set[Task] = set()
        self._callbacks: list[Callable[[], None]] = []
        self._children: "weakref.WeakSet[Cancellable]" = weakref.WeakSet()
        self._parent = parent
        self.logger = get_logger(__name__)
        if parent is not None:
            if parent.cancelled:
                self._cancelled = True
            else:
                parent._children.add(self)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def child(self, name: str = "") -> "Cancellable":
        """A token cancelled together with this one, but cancellable alone."""
        return Cancellable(parent=self, name=name or self.name)

    def release(self) -> None:
        """Detach from the parent once the scoped work is over."""
        if self._parent is not None:
            self._parent._children.discard(self)
            self._parent = None

    def connect(self, callback: Callable[[], None]) -> None:
        """Run callback on cancellation, or right away if already cancelled."""
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise Cancelled(f"Operation {self.name or 'task'} was cancelled")

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        for task in list(self._running_tasks):
            if not task.done():
                task.cancel()
        for child in list(self._children):
            child.cancel()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                self.logger.error(
                    f"Error running cancellation callback {callback!r}: {e}",
                    exc_info=True,
                )
        self.release()

    def create_task(
        self, coro: Coroutine[Any, Any, T], name: Optional[str] = None
    ) -> "Task[T]":
        """
        Schedules coro on the running loop and tracks it until it finishes.
        Failures of tasks nobody awaits are logged, cancellation is not.
        """
        if self._cancelled:
            coro.close()
            raise Cancelled(f"Operation {self.name or 'task'} was cancelled")
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._running_tasks.add(task)
        task.add_done_callback(self._cleanup_task)
        return task

    def _cleanup_task(self, task: Task) -> None:
        self._running_tasks.discard(task)
        if task.cancelled():
            return
        exception = task.exception()
        if exception is None or isinstance(exception, Cancelled):
            return
        if getattr(task, "_traylink_awaited", False):
            return
        self.logger.error(
            f"Async task {task.get_name()} failed: {exception!r}",
            exc_info=exception,
        )

    async def run(self, coro: Coroutine[Any, Any, T]) -> T:
        """
        Awaits coro as a tracked task. If this token fires meanwhile the caller
        gets ``Cancelled`` while its own task stays alive.
        """
        task = self.create_task(coro)
        task._traylink_awaited = True  # type: ignore[attr-defined]
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and not (current and current.cancelling()):
                raise Cancelled(
                    f"Operation {self.name or 'task'} was cancelled"
                ) from None
            raise

    async def sleep(self, delay: float) -> None:
        await self.run(asyncio.sleep(delay))

    async def run_in_executor(self, func: Callable[..., T], *args: Any) -> T:
        """Runs a blocking function on the shared thread pool."""

        async def _in_thread() -> T:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(get_global_executor(), func, *args)

        return await self.run(_in_thread())

    @property
    def running_tasks(self) -> Set[Task]:
        return set(self._running_tasks)


async def wait_all(awaitables: list[Awaitable[Any]]) -> list[Any]:
    """Awaits every item; the first failure is raised after all settle."""
    results = await asyncio.gather(*awaitables, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results
