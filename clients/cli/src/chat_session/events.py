from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Callback = Callable[..., None]


@dataclass(eq=False)
class Listener:
    event: str
    callback: Callback
    once: bool = False
    _emitter: "EventEmitter | None" = field(default=None, repr=False)

    def deliver(self, *args: Any) -> None:
        self.callback(*args)

    def cancel(self) -> None:
        if self._emitter is not None:
            self._emitter.off(self)
            self._emitter = None


class EventEmitter:
    """Registers listeners per event name and fans emitted payloads out to them.

    Listeners are plain synchronous callables. A listener that raises is logged
    and skipped so one faulty consumer cannot starve the others.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {}

    def on(self, event: str, callback: Callback) -> Listener:
        listener = Listener(event=event, callback=callback, _emitter=self)
        self._listeners.setdefault(event, []).append(listener)
        return listener

    def once(self, event: str, callback: Callback) -> Listener:
        listener = Listener(event=event, callback=callback, once=True, _emitter=self)
        self._listeners.setdefault(event, []).append(listener)
        return listener

    def off(self, listener: Listener) -> None:
        listeners = self._listeners.get(listener.event)
        if not listeners:
            return
        try:
            listeners.remove(listener)
        except ValueError:
            return
        if not listeners:
            self._listeners.pop(listener.event, None)

    def emit(self, event: str, *args: Any) -> int:
        delivered = 0
        for listener in list(self._listeners.get(event, [])):
            if listener.once:
                listener.cancel()
            try:
                listener.deliver(*args)
            except Exception:
                logger.exception("listener for %r failed", event)
                continue
            delivered += 1
        return delivered

    def listener_count(self, event: str | None = None) -> int:
        if event is not None:
            return len(self._listeners.get(event, []))
        return sum(len(listeners) for listeners in self._listeners.values())

    def clear(self) -> None:
        for listeners in list(self._listeners.values()):
            for listener in listeners:
                listener._emitter = None
        self._listeners.clear()
