"""Exception taxonomy of the time-stepping engine.

Setup problems (:class:`ConfigurationError`) and programmer errors
(:class:`NotImplementedAtThisLevel`) always abort a run. Newton
non-convergence and nonsmooth solver failures are policy-gated: they are
counted by the diagnostics sink and only raised when the simulation is
configured to treat them as fatal.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class NonsmoothSimulatorError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(NonsmoothSimulatorError, ValueError):
    """Invalid model or integrator setup detected before or at initialization."""


class NotImplementedAtThisLevel(NonsmoothSimulatorError, NotImplementedError):
    """A base-contract operation was called on a scheme that does not override it."""


class NonConvergenceError(NonsmoothSimulatorError):
    """Newton loop exhausted its iteration budget and the policy is fatal.

    Parameters
    ----------
    message : str
        Human readable description.
    step_idx : int, optional
        Index of the failed time step.
    t : float, optional
        End time of the failed step.
    residual_norm : float, optional
        Largest tracked residual at the last iterate.
    iter_count : int, optional
        Number of Newton iterations performed in the step.
    dt_effective : float, optional
        Time step used for the failed step.
    solver_type : str, optional
        Newton mode name (``"nonlinear"``, ...).
    failure_stage : str, optional
        Where the failure was detected (``"newton"``, ``"projection"``).
    state_snapshot : dict, optional
        Extra data copied into :meth:`to_diagnostics_dict`.
    """

    def __init__(
        self,
        message: str,
        *,
        step_idx: Optional[int] = None,
        t: Optional[float] = None,
        residual_norm: Optional[float] = None,
        iter_count: Optional[int] = None,
        dt_effective: Optional[float] = None,
        solver_type: Optional[str] = None,
        failure_stage: Optional[str] = None,
        state_snapshot: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.step_idx = step_idx
        self.t = t
        self.residual_norm = residual_norm
        self.iter_count = iter_count
        self.dt_effective = dt_effective
        self.solver_type = solver_type
        self.failure_stage = failure_stage
        self.state_snapshot = dict(state_snapshot or {})

    def to_diagnostics_dict(self) -> Dict[str, Any]:
        diag: Dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": str(self),
            "step_idx": self.step_idx,
            "t_last": self.t,
            "residual_norm": self.residual_norm,
            "iter_count": self.iter_count,
            "dt_effective": self.dt_effective,
            "solver_type": self.solver_type,
            "failure_stage": self.failure_stage,
        }
        diag.update(self.state_snapshot)
        return diag


class SolverFailureError(NonsmoothSimulatorError):
    """The nonsmooth subproblem solver returned a nonzero status and the policy is fatal."""

    def __init__(
        self,
        message: str,
        *,
        info: int,
        step_idx: Optional[int] = None,
        t: Optional[float] = None,
        problem_size: Optional[int] = None,
    ):
        super().__init__(message)
        self.info = info
        self.step_idx = step_idx
        self.t = t
        self.problem_size = problem_size
