"""Diagnostics sink shared by the orchestrator and its integrators.

One :class:`Diagnostics` instance is created per simulation and handed to
every component that reports something. It forwards messages to a standard
``logging.Logger`` (filtered by its own severity threshold), counts the
policy-gated failures and keeps an ordered record of the most recent notable
events so that callers can inspect what happened without parsing log output.
Counters are exact; the event record keeps only the last ``max_events``.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional


@dataclass
class DiagnosticEvent:
    kind: str
    data: Dict[str, Any] = field(default_factory=dict)


class Diagnostics:
    """Explicitly passed logging and bookkeeping context.

    Parameters
    ----------
    logger : logging.Logger, optional
        Destination logger. Defaults to ``logging.getLogger("nonsmooth_simulator")``.
    level : int
        Minimum severity forwarded to the logger.
    max_events : int
        Capacity of the event record; older events are dropped first.
    """

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        level: int = logging.WARNING,
        max_events: int = 1000,
    ):
        self.logger = logger if logger is not None else logging.getLogger("nonsmooth_simulator")
        self.level = level
        self.counters: Dict[str, int] = {
            "newton_non_convergence": 0,
            "solver_failures": 0,
        }
        self.events: Deque[DiagnosticEvent] = deque(maxlen=max_events)

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------
    def log(self, level: int, msg: str, *args: Any) -> None:
        if level >= self.level:
            self.logger.log(level, msg, *args)

    def debug(self, msg: str, *args: Any) -> None:
        self.log(logging.DEBUG, msg, *args)

    def info(self, msg: str, *args: Any) -> None:
        self.log(logging.INFO, msg, *args)

    def warning(self, msg: str, *args: Any) -> None:
        self.log(logging.WARNING, msg, *args)

    def error(self, msg: str, *args: Any) -> None:
        self.log(logging.ERROR, msg, *args)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------
    def record(self, kind: str, **data: Any) -> None:
        """Store an event and bump the counter of the same name, if any."""
        self.events.append(DiagnosticEvent(kind, data))
        if kind in self.counters:
            self.counters[kind] += 1

    def count(self, kind: str) -> int:
        return self.counters.get(kind, 0)

    def events_of(self, kind: str) -> List[DiagnosticEvent]:
        return [ev for ev in self.events if ev.kind == kind]

    def reset(self) -> None:
        for key in self.counters:
            self.counters[key] = 0
        self.events.clear()

    def summary(self) -> Dict[str, int]:
        return dict(self.counters)

    def to_file(self, path: Path, level: int = logging.INFO) -> logging.Handler:
        """Attach a file handler writing ``%(asctime)s [%(levelname)s] %(message)s`` lines."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, mode="w", encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        handler.setLevel(level)
        self.logger.addHandler(handler)
        if self.logger.level == logging.NOTSET or self.logger.level > level:
            self.logger.setLevel(level)
        self.level = min(self.level, level)
        return handler
