"""Logging setup and an event observer for parser lifecycle callbacks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .callbacks import CallbackEvent

PACKAGE_LOGGER = "promptdoc"


def setup_logging(level: str = "WARNING", verbose: bool = False) -> logging.Logger:
    """Configure the package logger once; later calls only adjust the level."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(logging.INFO if verbose else getattr(logging, level.upper(), logging.WARNING))
    return logger


@dataclass
class PhaseTiming:
    """Duration of one start/end event pair, e.g. ``run``."""

    phase: str
    duration_ms: float


class RunObserver:
    """
    Callback listener recording every lifecycle event.

    Register it on a CallbackManager; it logs each event and pairs
    ``on_<phase>_start`` / ``on_<phase>_end`` into timings.
    """

    def __init__(self, verbose: bool = False):
        self.events: List[CallbackEvent] = []
        self.timings: List[PhaseTiming] = []
        self.logger = logging.getLogger(f"{PACKAGE_LOGGER}.events")
        self.verbose = verbose
        self._open: Dict[str, List[int]] = {}

    async def __call__(self, event: CallbackEvent) -> None:
        self.record(event)

    def record(self, event: CallbackEvent) -> None:
        self.events.append(event)

        phase, marker = _split_event_name(event.name)
        if marker == "start":
            self._open.setdefault(phase, []).append(event.ts_ns)
        elif marker == "end" and self._open.get(phase):
            started = self._open[phase].pop()
            timing = PhaseTiming(phase=phase, duration_ms=(event.ts_ns - started) / 1_000_000)
            self.timings.append(timing)
            self.logger.info(f"{phase} finished in {timing.duration_ms:.2f}ms")
            return

        log = self.logger.info if self.verbose else self.logger.debug
        log(f"event: {event.name}")

    def event_names(self) -> List[str]:
        return [event.name for event in self.events]

    def get_summary(self) -> Dict[str, Dict[str, float]]:
        """Count and total duration per phase."""
        summary: Dict[str, Dict[str, float]] = {}
        for timing in self.timings:
            entry = summary.setdefault(timing.phase, {"count": 0, "total_ms": 0.0})
            entry["count"] += 1
            entry["total_ms"] += timing.duration_ms
        return summary

    def print_summary(self) -> None:
        summary = self.get_summary()
        if not summary:
            return
        lines = ["Lifecycle summary:"]
        for phase, entry in summary.items():
            lines.append(f"  {phase}: {int(entry['count'])} call(s), {entry['total_ms']:.2f}ms total")
        self.logger.info("\n".join(lines))

    def clear(self) -> None:
        self.events.clear()
        self.timings.clear()
        self._open.clear()


def _split_event_name(name: str) -> Tuple[str, Optional[str]]:
    body = name[3:] if name.startswith("on_") else name
    for marker in ("start", "end"):
        suffix = f"_{marker}"
        if body.endswith(suffix):
            return body[: -len(suffix)], marker
    return body, None
