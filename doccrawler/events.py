from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class EventBus:
    """
    Minimal synchronous publish/subscribe.

    Listeners for an event run in registration order at emit time. A listener
    that raises is logged and skipped; the emitter and other listeners carry on.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {}

    def on(self, event: str, listener: Listener) -> Listener:
        self._listeners.setdefault(event, []).append(listener)
        return listener

    def once(self, event: str, listener: Listener) -> Listener:
        def _wrapper(*args: Any, **kwargs: Any) -> Any:
            self.off(event, _wrapper)
            return listener(*args, **kwargs)

        _wrapper.__wrapped__ = listener  # type: ignore[attr-defined]
        return self.on(event, _wrapper)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if not listeners:
            return
        for i, fn in enumerate(listeners):
            if fn == listener or getattr(fn, "__wrapped__", None) == listener:
                del listeners[i]
                break
        if not listeners:
            self._listeners.pop(event, None)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> bool:
        listeners = list(self._listeners.get(event, ()))
        for fn in listeners:
            try:
                fn(*args, **kwargs)
            except Exception:
                logger.exception("event listener for %r failed", event)
        return bool(listeners)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def remove_all_listeners(self, event: str | None = None) -> None:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)
