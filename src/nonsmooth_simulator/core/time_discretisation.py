"""Uniform time grid and the event clock that walks it."""

from __future__ import annotations

import math

from .errors import ConfigurationError


class TimeDiscretisation:
    """Uniform grid ``t_k = t0 + k h``."""

    def __init__(self, t0: float, h: float):
        h = float(h)
        if not h > 0.0:
            raise ConfigurationError(f"time step must be > 0, got {h}")
        self.t0 = float(t0)
        self.h = h

    def current_time_step(self, k: int = 0) -> float:
        return self.h

    def tk(self, k: int) -> float:
        return self.t0 + k * self.h


class EventsManager:
    """Schedules the step events between ``t0`` and ``T``; the last step is clipped to ``T``."""

    def __init__(self, td: TimeDiscretisation, T: float):
        T = float(T)
        if not T > td.t0:
            raise ConfigurationError(f"final time {T} must be greater than t0={td.t0}")
        self.td = td
        self.T = T
        self.k = 0
        # round-off in (T - t0) / h must not add a sliver step
        self.n_steps = max(1, math.ceil((T - td.t0) / td.h - 1e-9))

    def t0(self) -> float:
        return self.td.t0

    def final_t(self) -> float:
        return self.T

    @property
    def current_time(self) -> float:
        return min(self.td.tk(self.k), self.T)

    @property
    def next_time(self) -> float:
        if self.k + 1 >= self.n_steps:
            return self.T
        return self.td.tk(self.k + 1)

    @property
    def time_step(self) -> float:
        return self.next_time - self.current_time

    def has_next_event(self) -> bool:
        return self.k < self.n_steps

    def advance(self) -> None:
        self.k += 1
