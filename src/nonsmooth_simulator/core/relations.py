"""Relations mapping dynamical-system state to interaction outputs.

A relation attached to an interaction between two systems acts on the
concatenation of their states, in the order given when the interaction was
linked. The column (or row) block belonging to one system is selected with
the slice stored on the interaction.
"""

from __future__ import annotations

from typing import Any, List, Optional, Sequence

import numpy as np

from .dynamical_systems import DynamicalSystem, FirstOrderDS, LagrangianLinearDS
from .errors import ConfigurationError


def _matrix(value: Any, name: str) -> np.ndarray:
    arr = np.array(value, dtype=float)
    if arr.ndim == 0:
        arr = arr.reshape(1, 1)
    elif arr.ndim == 1:
        arr = arr.reshape(1, -1)
    if arr.ndim != 2:
        raise ConfigurationError(f"{name} must be a matrix, got shape {arr.shape}")
    return arr


class Relation:
    kind = "relation"

    def state_sizes(self, ds_list: Sequence[DynamicalSystem]) -> List[int]:
        return [ds.n for ds in ds_list]

    def check_dimensions(self, ds_list: Sequence[DynamicalSystem], size: int) -> None:
        raise NotImplementedError


class FirstOrderLinearR(Relation):
    """``y = C x + D λ + e`` and ``r = B λ``.

    ``D`` is the feedthrough (saturation) matrix of the multiplier; it must
    be square with the size of the multiplier.
    """

    kind = "first_order_linear"

    def __init__(self, C: Any = None, B: Any = None, D: Any = None, e: Any = None):
        self.C = _matrix(C, "C") if C is not None else None
        self.B = _matrix(B, "B") if B is not None else None
        self.D = _matrix(D, "D") if D is not None else None
        self.e = np.atleast_1d(np.asarray(e, dtype=float)) if e is not None else None

    def check_dimensions(self, ds_list: Sequence[DynamicalSystem], size: int) -> None:
        if self.C is None or self.B is None:
            raise ConfigurationError(
                "FirstOrderLinearR: both C (output) and B (input) must be set before initialization"
            )
        for ds in ds_list:
            if not isinstance(ds, FirstOrderDS):
                raise ConfigurationError(
                    f"FirstOrderLinearR cannot act on {type(ds).__name__} ({ds.label})"
                )
        n = sum(self.state_sizes(ds_list))
        if self.C.shape != (size, n):
            raise ConfigurationError(f"C must have shape ({size}, {n}), got {self.C.shape}")
        if self.B.shape != (n, size):
            raise ConfigurationError(f"B must have shape ({n}, {size}), got {self.B.shape}")
        if self.D is not None and self.D.shape != (size, size):
            raise ConfigurationError(
                f"D (multiplier feedthrough) must have shape ({size}, {size}), got {self.D.shape}"
            )
        if self.e is not None and self.e.size != size:
            raise ConfigurationError(f"e must have size {size}, got {self.e.size}")

    def output(self, x: np.ndarray, lam: np.ndarray) -> np.ndarray:
        y = self.C @ x
        if self.D is not None:
            y = y + self.D @ lam
        if self.e is not None:
            y = y + self.e
        return y

    def free_output(self, x: np.ndarray) -> np.ndarray:
        y = self.C @ x
        if self.e is not None:
            y = y + self.e
        return y

    def output_block(self, sl: slice) -> np.ndarray:
        return self.C[:, sl]

    def input_block(self, sl: slice) -> np.ndarray:
        return self.B[sl, :]

    def feedthrough(self, size: int) -> Optional[np.ndarray]:
        return self.D


class LagrangianLinearTIR(Relation):
    """``y0 = H q + b``, ``y1 = H v`` and ``p = Hᵀ λ``."""

    kind = "lagrangian_linear"

    def __init__(self, H: Any = None, b: Any = None):
        self.H = _matrix(H, "H") if H is not None else None
        self.b = np.atleast_1d(np.asarray(b, dtype=float)) if b is not None else None

    def state_sizes(self, ds_list: Sequence[DynamicalSystem]) -> List[int]:
        return [getattr(ds, "ndof", ds.n) for ds in ds_list]

    def check_dimensions(self, ds_list: Sequence[DynamicalSystem], size: int) -> None:
        if self.H is None:
            raise ConfigurationError("LagrangianLinearTIR: H must be set before initialization")
        for ds in ds_list:
            if not isinstance(ds, LagrangianLinearDS):
                raise ConfigurationError(
                    f"LagrangianLinearTIR cannot act on {type(ds).__name__} ({ds.label})"
                )
        n = sum(self.state_sizes(ds_list))
        if self.H.shape != (size, n):
            raise ConfigurationError(f"H must have shape ({size}, {n}), got {self.H.shape}")
        if self.b is not None and self.b.size != size:
            raise ConfigurationError(f"b must have size {size}, got {self.b.size}")

    def position_output(self, q: np.ndarray) -> np.ndarray:
        y = self.H @ q
        if self.b is not None:
            y = y + self.b
        return y

    def velocity_output(self, v: np.ndarray) -> np.ndarray:
        return self.H @ v

    def output_block(self, sl: slice) -> np.ndarray:
        return self.H[:, sl]

    def input_block(self, sl: slice) -> np.ndarray:
        return self.H[:, sl].T
