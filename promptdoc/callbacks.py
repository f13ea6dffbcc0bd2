"""Lifecycle event dispatch to registered callbacks with per-callback timeouts."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


@dataclass
class CallbackEvent:
    """A lifecycle event such as ``on_run_start``."""

    name: str
    data: Any = None
    ts_ns: int = field(default_factory=time.time_ns)


Callback = Callable[[CallbackEvent], Union[Awaitable[Any], Any]]


@dataclass
class CallbackResult:
    callback: Callback
    value: Any = None
    error: Optional[BaseException] = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.timed_out


class CallbackManager:
    """Broadcasts events to callbacks.

    Each callback races its own timeout; one that fails or is still pending
    when it elapses is recorded as failed without affecting the others.
    ``run_callbacks`` never raises.
    """

    def __init__(self, callbacks: Optional[List[Callback]] = None, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.callbacks: List[Callback] = list(callbacks or [])
        self.timeout = timeout
        self.results: List[CallbackResult] = []

    def register(self, callback: Callback) -> None:
        self.callbacks.append(callback)

    def unregister(self, callback: Callback) -> None:
        self.callbacks = [cb for cb in self.callbacks if cb != callback]

    async def run_callbacks(self, event: CallbackEvent) -> None:
        if not self.callbacks:
            self.results = []
            return
        self.results = list(await asyncio.gather(*(self._run_one(cb, event) for cb in self.callbacks)))

    async def _run_one(self, callback: Callback, event: CallbackEvent) -> CallbackResult:
        try:
            value = callback(event)
            if inspect.isawaitable(value):
                value = await asyncio.wait_for(value, timeout=self.timeout)
            return CallbackResult(callback=callback, value=value)
        except asyncio.TimeoutError:
            logger.warning("Callback %s timed out after %ss on %s", _callback_name(callback), self.timeout, event.name)
            return CallbackResult(callback=callback, timed_out=True)
        except Exception as e:
            logger.warning("Callback %s failed on %s: %s", _callback_name(callback), event.name, e)
            return CallbackResult(callback=callback, error=e)


def _callback_name(callback: Callback) -> str:
    return getattr(callback, "__qualname__", None) or type(callback).__name__
