import itertools
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from traylink.core.log_setup import get_logger


class EventEmitter:
    """
    Observer registry with an optional closed set of event names.

    Subscribers are plain callables invoked synchronously in subscription order.
    A failing subscriber is logged and does not stop the others.
    """

    _ids = itertools.count(1)

    def __init__(self, events: Optional[Iterable[str]] = None, owner: str = ""):
        self._allowed = frozenset(events) if events is not None else None
        self._subscribers: Dict[str, List[Tuple[int, Callable[..., Any]]]] = {}
        self._owner = owner
        self._blocked = False
        self.logger = get_logger(__name__)

    def _check(self, event: str) -> None:
        if self._allowed is not None and event not in self._allowed:
            raise ValueError(f"Unknown event '{event}' for {self._owner or self}")

    def connect(self, event: str, callback: Callable[..., Any]) -> int:
        self._check(event)
        handler_id = next(self._ids)
        self._subscribers.setdefault(event, []).append((handler_id, callback))
        return handler_id

    def disconnect(self, handler_id: int) -> bool:
        for event, subscribers in self._subscribers.items():
            for i, (sub_id, _) in enumerate(subscribers):
                if sub_id == handler_id:
                    del subscribers[i]
                    return True
        return False

    def disconnect_all(self) -> None:
        self._subscribers.clear()

    def block(self) -> None:
        """Silences the emitter for good; used once the owner is destroyed."""
        self._blocked = True
        self._subscribers.clear()

    def has_subscribers(self, event: str) -> bool:
        return bool(self._subscribers.get(event))

    def emit(self, event: str, *args: Any) -> None:
        self._check(event)
        if self._blocked:
            return
        for handler_id, callback in list(self._subscribers.get(event, [])):
            try:
                callback(*args)
            except Exception as e:
                self.logger.error(
                    f"Error executing callback for event '{event}' of {self._owner}: {e}",
                    exc_info=True,
                )
