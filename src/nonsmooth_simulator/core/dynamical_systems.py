"""Dynamical systems integrated by the one-step integrators.

A dynamical system owns its state, a free-state buffer (prediction without
constraint forces), a residual buffer and a generalized input that collects
the constraint contributions mapped from the interactions. Past states are
kept in a small ring buffer so that one-step schemes can refer to the state
at the beginning of the step.
"""

from __future__ import annotations

from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Union

import numpy as np

from .errors import ConfigurationError

VectorFunction = Callable[[float, np.ndarray], np.ndarray]
TimeFunction = Callable[[float], np.ndarray]

# Forward finite-difference step, scaled by (1 + |x_j|)
FD_EPSILON = 1e-7


def _as_vector(value: Any, name: str) -> np.ndarray:
    arr = np.array(value, dtype=float)
    if arr.ndim == 0:
        arr = arr.reshape(1)
    if arr.ndim != 1:
        raise ConfigurationError(f"{name} must be a vector, got shape {arr.shape}")
    return arr


def _as_square(value: Any, n: int, name: str) -> np.ndarray:
    arr = np.array(value, dtype=float)
    if arr.ndim == 0:
        arr = np.eye(n) * float(arr)
    elif arr.ndim == 1:
        if arr.size != n:
            raise ConfigurationError(f"{name} diagonal has size {arr.size}, expected {n}")
        arr = np.diag(arr)
    if arr.shape != (n, n):
        raise ConfigurationError(f"{name} must have shape ({n}, {n}), got {arr.shape}")
    return arr


class DynamicalSystem:
    """Common state, memory and integrator bookkeeping."""

    kind = "dynamical_system"

    def __init__(self, x0: Any, name: Optional[str] = None):
        self.x = _as_vector(x0, "x0").copy()
        self.n = self.x.size
        self.x_free = self.x.copy()
        self.residual = np.zeros(self.n)
        self.r = np.zeros(self.n)
        self.name = name
        self.number: Optional[int] = None
        self._osi = None
        self._memory: Deque[Dict[str, np.ndarray]] = deque(maxlen=1)

    # ------------------------------------------------------------------
    # Integrator assignment
    # ------------------------------------------------------------------
    @property
    def osi(self):
        return self._osi

    def assign_osi(self, osi) -> None:
        """Bind the integrator; a system cannot change integrator once bound."""
        if self._osi is not None and self._osi is not osi:
            raise ConfigurationError(
                f"{self.label}: already integrated by {type(self._osi).__name__}, "
                f"cannot be reassigned to {type(osi).__name__}"
            )
        self._osi = osi

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        return f"ds{self.number}" if self.number is not None else type(self).__name__

    # ------------------------------------------------------------------
    # Memory
    # ------------------------------------------------------------------
    def init_memory(self, depth: int) -> None:
        if depth < 1:
            raise ConfigurationError(f"{self.label}: memory depth must be >= 1, got {depth}")
        self._memory = deque(maxlen=int(depth))

    def _snapshot(self) -> Dict[str, np.ndarray]:
        return {"x": self.x.copy(), "r": self.r.copy()}

    def swap_in_memory(self) -> None:
        """Push the current state on top of the history ring buffer."""
        self._memory.appendleft(self._snapshot())

    def memory(self, k: int = 0) -> Dict[str, np.ndarray]:
        if k >= len(self._memory):
            raise IndexError(f"{self.label}: memory slot {k} not available ({len(self._memory)} stored)")
        return self._memory[k]

    def x_memory(self, k: int = 0) -> np.ndarray:
        return self.memory(k)["x"]

    # ------------------------------------------------------------------
    # Nonsmooth input
    # ------------------------------------------------------------------
    def reset_nonsmooth_part(self, level: Optional[int] = None) -> None:
        self.r[:] = 0.0

    def input_vector(self, level: int = 0) -> np.ndarray:
        return self.r

    def state_labels(self) -> List[str]:
        return [f"{self.label}.x{i}" for i in range(self.n)]

    def state_vector(self) -> np.ndarray:
        return self.x.copy()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, n={self.n})"


class FirstOrderDS(DynamicalSystem):
    """``dx/dt = rhs(t, x) + r``."""

    kind = "first_order"

    def rhs(self, t: float, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def jacobian_rhs_x(self, t: float, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError


class FirstOrderLinearDS(FirstOrderDS):
    """Linear first-order system ``dx/dt = A x + b(t) + r``.

    Parameters
    ----------
    x0 : array_like
        Initial state.
    A : array_like
        State matrix, shape ``(n, n)``.
    b : array_like or callable, optional
        Constant drift vector or function ``b(t)``.
    """

    kind = "first_order_linear"

    def __init__(self, x0: Any, A: Any, b: Union[None, Any, TimeFunction] = None, name: Optional[str] = None):
        super().__init__(x0, name=name)
        self.A = _as_square(A, self.n, "A")
        self._b_func: Optional[TimeFunction] = None
        self._b = np.zeros(self.n)
        if callable(b):
            self._b_func = b
        elif b is not None:
            self._b = _as_vector(b, "b")
            if self._b.size != self.n:
                raise ConfigurationError(f"b has size {self._b.size}, expected {self.n}")

    def b(self, t: float) -> np.ndarray:
        if self._b_func is not None:
            return _as_vector(self._b_func(t), "b(t)")
        return self._b

    def rhs(self, t: float, x: np.ndarray) -> np.ndarray:
        return self.A @ x + self.b(t)

    def jacobian_rhs_x(self, t: float, x: np.ndarray) -> np.ndarray:
        return self.A


class FirstOrderNonLinearDS(FirstOrderDS):
    """Nonlinear first-order system ``dx/dt = f(t, x) + r``.

    When ``jacobian_fx`` is not given the Jacobian is approximated by forward
    finite differences.
    """

    kind = "first_order_nonlinear"

    def __init__(
        self,
        x0: Any,
        f: VectorFunction,
        jacobian_fx: Optional[Callable[[float, np.ndarray], np.ndarray]] = None,
        name: Optional[str] = None,
    ):
        super().__init__(x0, name=name)
        if not callable(f):
            raise ConfigurationError("FirstOrderNonLinearDS requires a callable f(t, x)")
        self._f = f
        self._jacobian_fx = jacobian_fx

    def rhs(self, t: float, x: np.ndarray) -> np.ndarray:
        return _as_vector(self._f(t, x), "f(t, x)")

    def jacobian_rhs_x(self, t: float, x: np.ndarray) -> np.ndarray:
        if self._jacobian_fx is not None:
            return np.atleast_2d(np.asarray(self._jacobian_fx(t, x), dtype=float))
        f0 = self.rhs(t, x)
        J = np.zeros((self.n, self.n))
        for j in range(self.n):
            dx = FD_EPSILON * (1.0 + abs(x[j]))
            x_pert = x.copy()
            x_pert[j] += dx
            J[:, j] = (self.rhs(t, x_pert) - f0) / dx
        return J


class LagrangianLinearDS(DynamicalSystem):
    """Linear mechanical system ``M q'' + C q' + K q = fext(t) + p``.

    The generalized input ``p`` is a stack of levels: ``p[0]`` (position
    level, used by projections), ``p[1]`` (impulses) and ``p[2]`` (forces).

    Parameters
    ----------
    q0, v0 : array_like
        Initial coordinates and velocities.
    mass : float or array_like
        Scalar, diagonal or full mass matrix.
    K, C : array_like, optional
        Stiffness and damping matrices.
    fext : array_like or callable, optional
        Constant external force or function ``fext(t)``.
    """

    kind = "lagrangian_linear"

    def __init__(
        self,
        q0: Any,
        v0: Any,
        mass: Any,
        K: Any = None,
        C: Any = None,
        fext: Union[None, Any, TimeFunction] = None,
        name: Optional[str] = None,
    ):
        q = _as_vector(q0, "q0")
        v = _as_vector(v0, "v0")
        if q.size != v.size:
            raise ConfigurationError(f"q0 and v0 sizes differ ({q.size} != {v.size})")
        self.ndof = q.size
        super().__init__(np.concatenate([q, v]), name=name)
        self.q = q.copy()
        self.v = v.copy()
        self.v_free = v.copy()
        self.mass = _as_square(mass, self.ndof, "mass")
        if np.any(np.linalg.eigvalsh(0.5 * (self.mass + self.mass.T)) <= 0.0):
            raise ConfigurationError(f"{self.label}: mass matrix must be positive definite")
        self.K = _as_square(K, self.ndof, "K") if K is not None else np.zeros((self.ndof, self.ndof))
        self.C = _as_square(C, self.ndof, "C") if C is not None else np.zeros((self.ndof, self.ndof))
        self._fext_func: Optional[TimeFunction] = None
        self._fext = np.zeros(self.ndof)
        if callable(fext):
            self._fext_func = fext
        elif fext is not None:
            self._fext = _as_vector(fext, "fext")
            if self._fext.size != self.ndof:
                raise ConfigurationError(f"fext has size {self._fext.size}, expected {self.ndof}")
        self.p = [np.zeros(self.ndof) for _ in range(3)]
        self.residual = np.zeros(self.ndof)

    def fext(self, t: float) -> np.ndarray:
        if self._fext_func is not None:
            return _as_vector(self._fext_func(t), "fext(t)")
        return self._fext

    def forces(self, t: float, q: np.ndarray, v: np.ndarray) -> np.ndarray:
        return self.fext(t) - self.C @ v - self.K @ q

    def _sync_x(self) -> None:
        self.x = np.concatenate([self.q, self.v])

    def _snapshot(self) -> Dict[str, np.ndarray]:
        return {
            "q": self.q.copy(),
            "v": self.v.copy(),
            "x": np.concatenate([self.q, self.v]),
            "p1": self.p[1].copy(),
        }

    def q_memory(self, k: int = 0) -> np.ndarray:
        return self.memory(k)["q"]

    def v_memory(self, k: int = 0) -> np.ndarray:
        return self.memory(k)["v"]

    def reset_nonsmooth_part(self, level: Optional[int] = None) -> None:
        if level is None:
            for p in self.p:
                p[:] = 0.0
        else:
            self.p[level][:] = 0.0

    def input_vector(self, level: int = 1) -> np.ndarray:
        return self.p[level]

    def state_labels(self) -> List[str]:
        return [f"{self.label}.q{i}" for i in range(self.ndof)] + [
            f"{self.label}.v{i}" for i in range(self.ndof)
        ]

    def state_vector(self) -> np.ndarray:
        return np.concatenate([self.q, self.v])
