"""Nonsmooth laws: admissible sets of (output, multiplier) pairs.

All laws are expressed through componentwise bounds on the multiplier and
the normal-cone relation ``-y ∈ N_[lower, upper](λ)``:

- complementarity (``lower = 0``, ``upper = +inf``): ``0 <= y ⊥ λ >= 0``
- relay (``lower = lb``, ``upper = ub``): ``y = 0`` while ``λ`` is strictly
  inside the box, ``y <= 0`` at ``ub`` and ``y >= 0`` at ``lb``.

Any solver that works with bounds can therefore treat a mix of laws
uniformly through :meth:`NonSmoothLaw.bounds` and :meth:`NonSmoothLaw.project`.
"""

from __future__ import annotations

from typing import Any, Tuple

import numpy as np

from .errors import ConfigurationError


class NonSmoothLaw:
    """Base class; ``size`` is the multiplier dimension."""

    kind = "nonsmooth_law"

    def __init__(self, size: int = 1):
        size = int(size)
        if size < 1:
            raise ConfigurationError(f"{type(self).__name__}: size must be >= 1, got {size}")
        self.size = size

    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        raise NotImplementedError

    def project(self, z: np.ndarray) -> np.ndarray:
        lower, upper = self.bounds()
        return np.clip(z, lower, upper)

    def impact_shift(self, y_previous: np.ndarray) -> np.ndarray:
        """Term added to the free output of a velocity-level problem."""
        return np.zeros(self.size)

    def is_admissible(self, y: Any, lam: Any, tol: float) -> bool:
        """Check ``(y, λ)`` against the law within ``tol``."""
        y = np.asarray(y, dtype=float).ravel()
        lam = np.asarray(lam, dtype=float).ravel()
        lower, upper = self.bounds()
        if np.any(lam < lower - tol) or np.any(lam > upper + tol):
            return False
        for yi, li, lo, up in zip(y, lam, lower, upper):
            at_lower = li <= lo + tol
            at_upper = li >= up - tol
            if at_lower and at_upper:
                continue
            if at_lower:
                if yi < -tol:
                    return False
            elif at_upper:
                if yi > tol:
                    return False
            elif abs(yi) > tol:
                return False
        return True

    def __repr__(self) -> str:
        return f"{type(self).__name__}(size={self.size})"


class ComplementarityConditionNSL(NonSmoothLaw):
    """``0 <= y ⊥ λ >= 0`` componentwise."""

    kind = "complementarity"

    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        return np.zeros(self.size), np.full(self.size, np.inf)


class NewtonImpactNSL(ComplementarityConditionNSL):
    """Velocity-level unilateral law with Newton restitution.

    ``y⁺ + e y⁻ >= 0 ⊥ λ >= 0`` where ``y⁻`` is the output velocity at the
    beginning of the step.
    """

    kind = "newton_impact"

    def __init__(self, e: float = 0.0, size: int = 1):
        super().__init__(size)
        e = float(e)
        if not (0.0 <= e <= 1.0):
            raise ConfigurationError(f"restitution coefficient must lie in [0, 1], got {e}")
        self.e = e

    def impact_shift(self, y_previous: np.ndarray) -> np.ndarray:
        return self.e * np.asarray(y_previous, dtype=float)

    def __repr__(self) -> str:
        return f"NewtonImpactNSL(e={self.e}, size={self.size})"


class RelayNSL(NonSmoothLaw):
    """Relay / saturation law with multiplier bounds ``lb <= λ <= ub``."""

    kind = "relay"

    def __init__(self, size: int = 1, lb: Any = -1.0, ub: Any = 1.0):
        super().__init__(size)
        self.lb = np.broadcast_to(np.asarray(lb, dtype=float), (self.size,)).copy()
        self.ub = np.broadcast_to(np.asarray(ub, dtype=float), (self.size,)).copy()
        if np.any(self.lb >= self.ub):
            raise ConfigurationError(f"RelayNSL requires lb < ub, got lb={self.lb}, ub={self.ub}")

    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        return self.lb, self.ub

    def __repr__(self) -> str:
        return f"RelayNSL(size={self.size}, lb={self.lb.tolist()}, ub={self.ub.tolist()})"
