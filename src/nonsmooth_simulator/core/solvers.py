"""Solvers for the assembled one-step nonsmooth problem.

A solver is any callable ``solver(data: ProblemData) -> SolverResult``. The
status code follows the usual convention: ``0`` means converged, anything
else is a failure handed to the simulation's solver-output check.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List

import numpy as np

from .laws import NonSmoothLaw

logger = logging.getLogger(__name__)

INFO_CONVERGED = 0
INFO_MAX_ITERATIONS = 1
INFO_SINGULAR_DIAGONAL = 2


@dataclass
class ProblemData:
    """Linear complementarity / box-constrained problem ``w = W z + q``.

    ``laws[k]`` constrains ``z[offsets[k]:offsets[k + 1]]``.
    """

    W: np.ndarray
    q: np.ndarray
    laws: List[NonSmoothLaw]
    interactions: List[int]
    offsets: List[int]
    tolerance: float = 1e-8
    max_iterations: int = 1000

    @property
    def size(self) -> int:
        return int(self.q.size)

    def bounds(self):
        lower = np.empty(self.size)
        upper = np.empty(self.size)
        for k, law in enumerate(self.laws):
            sl = slice(self.offsets[k], self.offsets[k + 1])
            lower[sl], upper[sl] = law.bounds()
        return lower, upper


@dataclass
class SolverResult:
    z: np.ndarray
    w: np.ndarray
    info: int
    iterations: int = 0
    error: float = 0.0
    extra: dict = field(default_factory=dict)


SolverFunction = Callable[[ProblemData], SolverResult]


def natural_map_error(z: np.ndarray, w: np.ndarray, lower: np.ndarray, upper: np.ndarray) -> float:
    """Infinity norm of ``z - proj_[lower, upper](z - w)``; zero exactly at a solution."""
    if z.size == 0:
        return 0.0
    return float(np.max(np.abs(z - np.clip(z - w, lower, upper))))


def projected_gauss_seidel(data: ProblemData) -> SolverResult:
    """Projected Gauss-Seidel sweeps starting from ``z = 0``.

    Converges for symmetric positive definite ``W``; returns ``info=1`` when
    the iteration budget is exhausted and ``info=2`` when a diagonal entry is
    not strictly positive.
    """
    W = np.asarray(data.W, dtype=float)
    q = np.asarray(data.q, dtype=float)
    n = q.size
    z = np.zeros(n)
    lower, upper = data.bounds()
    if n == 0:
        return SolverResult(z, q.copy(), INFO_CONVERGED)

    diag = np.diag(W).copy()
    if np.any(diag <= 0.0):
        logger.debug("PGS: non-positive diagonal entry in W (min=%.3e)", float(diag.min()))
        return SolverResult(z, W @ z + q, INFO_SINGULAR_DIAGONAL, 0, float("inf"))

    w = W @ z + q
    error = natural_map_error(z, w, lower, upper)
    for it in range(1, data.max_iterations + 1):
        for i in range(n):
            wi = W[i] @ z + q[i]
            z[i] = min(max(z[i] - wi / diag[i], lower[i]), upper[i])
        w = W @ z + q
        error = natural_map_error(z, w, lower, upper)
        if error <= data.tolerance:
            return SolverResult(z, w, INFO_CONVERGED, it, error)

    logger.debug("PGS: no convergence after %d sweeps (error=%.3e)", data.max_iterations, error)
    return SolverResult(z, w, INFO_MAX_ITERATIONS, data.max_iterations, error)
