"""One-step integrators (time-stepping schemes).

An integrator is a strategy object assigned to a set of dynamical systems.
The simulation drives it through a fixed contract (free state, state update,
output/input update, residuals, activation rule) and never inspects its
concrete type. Per-system and per-interaction methods
(``compute_free_state_ds``, ``update_state_ds``, ``update_input_ds``,
``update_output_interaction``) only touch the entity they are given, so the
simulation may run them concurrently.

Schemes provided:

- :class:`EulerMoreauOSI`: θ-method for first-order systems
- :class:`ZeroOrderHoldOSI`: exact discretisation of linear first-order systems
- :class:`MoreauJeanOSI`: velocity-level scheme for Lagrangian systems
- :class:`MoreauJeanCombinedProjectionOSI`: Moreau-Jean plus position projection
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

import numpy as np
from scipy.linalg import expm, lu_factor, lu_solve

from .dynamical_systems import (
    DynamicalSystem,
    FirstOrderDS,
    FirstOrderLinearDS,
    FirstOrderNonLinearDS,
    LagrangianLinearDS,
)
from .errors import ConfigurationError, NotImplementedAtThisLevel
from .graph import Interaction
from .laws import ComplementarityConditionNSL
from .relations import FirstOrderLinearR, LagrangianLinearTIR
from .solvers import ProblemData, projected_gauss_seidel

logger = logging.getLogger(__name__)


def _serial_map(func: Callable[[Any], Any], items: Iterable[Any]) -> List[Any]:
    return [func(item) for item in items]


def _inf_norm(vec: np.ndarray) -> float:
    return float(np.max(np.abs(vec))) if vec.size else 0.0


class OneStepIntegrator:
    """Base contract of every time-stepping scheme."""

    integrator_type = "abstract"
    supported_ds: tuple = ()
    supported_relations: tuple = ()
    size_mem = 1
    level_min_for_output = 0
    level_max_for_output = 0
    level_min_for_input = 0
    level_max_for_input = 0
    level_for_problem = 0

    def __init__(self):
        self.ds_numbers: List[int] = []
        self.nsds = None
        self.topology = None
        self.diagnostics = None
        self.tolerance = 1e-8
        self.t0: Optional[float] = None
        self.t1: Optional[float] = None
        self.time_step: Optional[float] = None
        self.mapper: Callable[[Callable[[Any], Any], Iterable[Any]], List[Any]] = _serial_map
        self._work: Dict[int, Dict[str, Any]] = {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(ds={self.ds_numbers})"

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------
    def associate(self, ds: DynamicalSystem) -> None:
        ds.assign_osi(self)
        if ds.number not in self.ds_numbers:
            self.ds_numbers.append(ds.number)

    def bind(self, nsds, topology, diagnostics, tolerance: float, mapper=None) -> None:
        self.nsds = nsds
        self.topology = topology
        self.diagnostics = diagnostics
        self.tolerance = float(tolerance)
        if mapper is not None:
            self.mapper = mapper

    def dynamical_systems(self) -> List[DynamicalSystem]:
        return [self.nsds.dynamical_system(k) for k in self.ds_numbers]

    def owns(self, inter: Interaction) -> bool:
        return bool(inter.ds_numbers) and inter.ds_numbers[0] in self.ds_numbers

    def interactions_in(self, index_set: Iterable[int]) -> List[Interaction]:
        out = []
        for k in index_set:
            inter = self.nsds.interaction(k)
            if self.owns(inter):
                out.append(inter)
        return out

    def number_of_index_sets(self) -> int:
        raise NotImplementedAtThisLevel(f"{type(self).__name__}.number_of_index_sets")

    def output_levels(self, level: Optional[int] = None) -> range:
        if level is not None:
            return range(level, level + 1)
        return range(self.level_min_for_output, self.level_max_for_output + 1)

    def input_levels(self, level: Optional[int] = None) -> range:
        if level is not None:
            return range(level, level + 1)
        return range(self.level_min_for_input, self.level_max_for_input + 1)

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------
    def initialize(self, t0: float, h: float) -> None:
        self.set_time_interval(t0, t0 + h)
        for ds in self.dynamical_systems():
            ds.init_memory(self.size_mem)
            self.initialize_for_system(ds)

    def initialize_for_system(self, ds: DynamicalSystem) -> None:
        if not isinstance(ds, self.supported_ds):
            raise ConfigurationError(
                f"{type(self).__name__} cannot integrate {type(ds).__name__} ({ds.label})"
            )
        self._work[ds.number] = {"h": None}

    def initialize_for_interaction(self, inter: Interaction) -> None:
        if not isinstance(inter.relation, self.supported_relations):
            raise ConfigurationError(
                f"{type(self).__name__} does not support relation "
                f"{type(inter.relation).__name__} on {inter.label}"
            )
        inter.init_memory(self.size_mem)

    def set_time_interval(self, t0: float, t1: float) -> None:
        self.t0 = float(t0)
        self.t1 = float(t1)
        self.time_step = self.t1 - self.t0

    # ------------------------------------------------------------------
    # Newton iteration hooks
    # ------------------------------------------------------------------
    def compute_initial_newton_state(self) -> None:
        """Starting iterate of the Newton loop; the accepted state by default."""

    def prepare_newton_iteration(self, time: float) -> None:
        """Refresh linearizations around the current iterate; nothing for linear schemes."""

    def compute_free_state(self) -> None:
        self.mapper(self.compute_free_state_ds, self.dynamical_systems())

    def compute_free_state_ds(self, ds: DynamicalSystem) -> None:
        raise NotImplementedAtThisLevel(f"{type(self).__name__}.compute_free_state_ds")

    def update_state(self, level: int = 0) -> None:
        self.mapper(lambda ds: self.update_state_ds(ds, level), self.dynamical_systems())

    def update_state_ds(self, ds: DynamicalSystem, level: int = 0) -> None:
        raise NotImplementedAtThisLevel(f"{type(self).__name__}.update_state_ds")

    def update_output(self, time: float, level: Optional[int] = None) -> None:
        """Recompute the outputs of every interaction of IndexSet_0 owned by this integrator.

        ``level`` selects the derivative level of ``y`` (0 position, 1 velocity),
        not an index set; ``None`` covers ``level_min_for_output..level_max_for_output``.
        """
        inters = self.interactions_in(self.topology.index_set(0))
        for lv in self.output_levels(level):
            self.mapper(lambda inter: self.update_output_interaction(inter, time, lv), inters)

    def update_output_interaction(self, inter: Interaction, time: float, level: int) -> None:
        raise NotImplementedAtThisLevel(f"{type(self).__name__}.update_output_interaction")

    def update_input(self, time: float, level: Optional[int] = None) -> None:
        """Gather the multipliers of IndexSet_0 into the inputs of the owned systems.

        ``level`` selects the derivative level of the multiplier and of the
        system input (e.g. ``p[1]`` for impulses), not an index set; ``None``
        covers ``level_min_for_input..level_max_for_input``.
        """
        self.mapper(lambda ds: self.update_input_ds(ds, time, level), self.dynamical_systems())

    def update_input_ds(self, ds: DynamicalSystem, time: float, level: Optional[int] = None) -> None:
        """Sum ``input_block @ lambda`` over every interaction touching ``ds``."""
        for lv in self.input_levels(level):
            vec = ds.input_vector(lv)
            vec[:] = 0.0
            for k in self.nsds.interactions_of(ds.number):
                inter = self.nsds.interaction(k)
                if k not in self.topology.index_set(0):
                    continue
                slot = inter.ds_numbers.index(ds.number)
                vec += inter.relation.input_block(inter.slices[slot]) @ inter.lambda_[lv]

    def project_on_constraints(self, time: float) -> None:
        """Position correction after the velocity update; nothing by default."""

    # ------------------------------------------------------------------
    # Residuals
    # ------------------------------------------------------------------
    def compute_residu(self) -> float:
        norms = self.mapper(self.compute_residu_ds, self.dynamical_systems())
        return max(norms, default=0.0)

    def compute_residu_ds(self, ds: DynamicalSystem) -> float:
        raise NotImplementedAtThisLevel(f"{type(self).__name__}.compute_residu_ds")

    def compute_residu_output(self, time: float, index_set: Iterable[int]) -> float:
        norm = 0.0
        for inter in self.interactions_in(index_set):
            for lv in self.output_levels():
                norm = max(norm, _inf_norm(inter.y[lv] - inter.y_newton[lv]))
        return norm

    def compute_residu_input(self, time: float, index_set: Iterable[int]) -> float:
        norm = 0.0
        for inter in self.interactions_in(index_set):
            for lv in self.input_levels():
                norm = max(norm, _inf_norm(inter.lambda_[lv] - inter.lambda_newton[lv]))
        return norm

    # ------------------------------------------------------------------
    # Activation rule
    # ------------------------------------------------------------------
    def add_interaction_in_index_set(self, inter: Interaction, i: int) -> bool:
        raise NotImplementedAtThisLevel(
            f"{type(self).__name__}.add_interaction_in_index_set is not implemented at this level"
        )

    def remove_interaction_from_index_set(self, inter: Interaction, i: int) -> bool:
        raise NotImplementedAtThisLevel(
            f"{type(self).__name__}.remove_interaction_from_index_set is not implemented at this level"
        )

    # ------------------------------------------------------------------
    # Nonsmooth problem assembly
    # ------------------------------------------------------------------
    def free_output(self, inter: Interaction, level: int) -> np.ndarray:
        raise NotImplementedAtThisLevel(f"{type(self).__name__}.free_output")

    def input_operator(self, ds: DynamicalSystem, block: np.ndarray) -> np.ndarray:
        """Map an input block of a relation to the change of the corrected state."""
        raise NotImplementedAtThisLevel(f"{type(self).__name__}.input_operator")

    def coupling_block(self, inter_i: Interaction, inter_j: Interaction, level: int) -> np.ndarray:
        """``W_ij``: sensitivity of the output of ``inter_i`` to the multiplier of ``inter_j``."""
        block = np.zeros((inter_i.size, inter_j.size))
        for slot_i, k in enumerate(inter_i.ds_numbers):
            if k not in inter_j.ds_numbers:
                continue
            slot_j = inter_j.ds_numbers.index(k)
            ds = self.nsds.dynamical_system(k)
            out_block = inter_i.relation.output_block(inter_i.slices[slot_i])
            in_block = inter_j.relation.input_block(inter_j.slices[slot_j])
            block += out_block @ self.input_operator(ds, in_block)
        if inter_i is inter_j:
            feedthrough = getattr(inter_i.relation, "feedthrough", None)
            D = feedthrough(inter_i.size) if feedthrough is not None else None
            if D is not None:
                block += D
        return block


# ----------------------------------------------------------------------
# First-order schemes
# ----------------------------------------------------------------------
class _FirstOrderIntegrator(OneStepIntegrator):
    supported_relations = (FirstOrderLinearR,)

    def number_of_index_sets(self) -> int:
        return 1

    def _concat(self, inter: Interaction, attr: str) -> np.ndarray:
        return np.concatenate([getattr(ds, attr) for ds in self.nsds.ds_of(inter)])

    def free_output(self, inter: Interaction, level: int) -> np.ndarray:
        return inter.relation.free_output(self._concat(inter, "x_free"))

    def update_output_interaction(self, inter: Interaction, time: float, level: int) -> None:
        inter.y[level][:] = inter.relation.output(self._concat(inter, "x"), inter.lambda_[level])

    def add_interaction_in_index_set(self, inter: Interaction, i: int) -> bool:
        # only IndexSet_0 exists and it is topological
        return True

    def remove_interaction_from_index_set(self, inter: Interaction, i: int) -> bool:
        return False


class EulerMoreauOSI(_FirstOrderIntegrator):
    """θ-method for first-order systems.

    ``x_{k+1} = x_k + h [θ f(t_{k+1}, x_{k+1}) + (1 - θ) f(t_k, x_k)] + h r_{k+1}``

    Linear systems are solved exactly in one iteration; nonlinear systems
    are linearized around the current Newton iterate with the iteration
    matrix ``W = I - h θ J``.
    """

    integrator_type = "euler_moreau"
    supported_ds = (FirstOrderLinearDS, FirstOrderNonLinearDS)

    def __init__(self, theta: float = 0.5):
        super().__init__()
        theta = float(theta)
        if not (0.0 <= theta <= 1.0):
            raise ConfigurationError(f"theta must lie in [0, 1], got {theta}")
        self.theta = theta

    def _linearize(self, ds: FirstOrderDS) -> None:
        work = self._work[ds.number]
        J = ds.jacobian_rhs_x(self.t1, ds.x)
        work["W"] = np.eye(ds.n) - self.time_step * self.theta * J
        work["lu"] = lu_factor(work["W"])
        work["h"] = self.time_step

    def prepare_newton_iteration(self, time: float) -> None:
        nonlinear = [ds for ds in self.dynamical_systems() if not isinstance(ds, FirstOrderLinearDS)]
        self.mapper(self._linearize, nonlinear)

    def _iteration_matrix(self, ds: FirstOrderDS):
        # nonlinear systems keep the last linearization (frozen in LINEAR mode)
        work = self._work[ds.number]
        if work["h"] != self.time_step:
            if isinstance(ds, FirstOrderLinearDS):
                work["W"] = np.eye(ds.n) - self.time_step * self.theta * ds.A
                work["lu"] = lu_factor(work["W"])
                work["h"] = self.time_step
            else:
                self._linearize(ds)
        return work["lu"]

    def _smooth_residu(self, ds: FirstOrderDS, x: np.ndarray) -> np.ndarray:
        h, th = self.time_step, self.theta
        xk = ds.x_memory(0)
        return x - xk - h * (th * ds.rhs(self.t1, x) + (1.0 - th) * ds.rhs(self.t0, xk))

    def compute_free_state_ds(self, ds: FirstOrderDS) -> None:
        lu = self._iteration_matrix(ds)
        if isinstance(ds, FirstOrderLinearDS):
            h, th = self.time_step, self.theta
            xk = ds.x_memory(0)
            rhs = xk + h * ((1.0 - th) * (ds.A @ xk) + th * ds.b(self.t1) + (1.0 - th) * ds.b(self.t0))
            ds.x_free[:] = lu_solve(lu, rhs)
        else:
            ds.x_free[:] = ds.x - lu_solve(lu, self._smooth_residu(ds, ds.x))

    def update_state_ds(self, ds: FirstOrderDS, level: int = 0) -> None:
        lu = self._work[ds.number]["lu"]
        ds.x[:] = ds.x_free + self.time_step * lu_solve(lu, ds.r)

    def compute_residu_ds(self, ds: FirstOrderDS) -> float:
        ds.residual[:] = self._smooth_residu(ds, ds.x) - self.time_step * ds.r
        return _inf_norm(ds.residual)

    def input_operator(self, ds: FirstOrderDS, block: np.ndarray) -> np.ndarray:
        return self.time_step * lu_solve(self._work[ds.number]["lu"], block)


class ZeroOrderHoldOSI(_FirstOrderIntegrator):
    """Exact discretisation of ``dx/dt = A x + b + r`` with inputs held over the step.

    ``x_{k+1} = Φ x_k + Ψ (b(t_k) + r)`` with ``Φ = expm(A h)`` and
    ``Ψ = ∫_0^h expm(A s) ds``, both read off the exponential of the
    augmented matrix ``[[A, I], [0, 0]] h``.
    """

    integrator_type = "zero_order_hold"
    supported_ds = (FirstOrderLinearDS,)

    def _discretise(self, ds: FirstOrderLinearDS) -> Dict[str, Any]:
        work = self._work[ds.number]
        h = self.time_step
        if work["h"] != h:
            n = ds.n
            aug = np.zeros((2 * n, 2 * n))
            aug[:n, :n] = ds.A * h
            aug[:n, n:] = np.eye(n) * h
            E = expm(aug)
            work["phi"] = E[:n, :n]
            work["psi"] = E[:n, n:]
            work["h"] = h
        return work

    def compute_free_state_ds(self, ds: FirstOrderLinearDS) -> None:
        work = self._discretise(ds)
        ds.x_free[:] = work["phi"] @ ds.x_memory(0) + work["psi"] @ ds.b(self.t0)

    def update_state_ds(self, ds: FirstOrderLinearDS, level: int = 0) -> None:
        ds.x[:] = ds.x_free + self._work[ds.number]["psi"] @ ds.r

    def compute_residu_ds(self, ds: FirstOrderLinearDS) -> float:
        work = self._discretise(ds)
        expected = work["phi"] @ ds.x_memory(0) + work["psi"] @ (ds.b(self.t0) + ds.r)
        ds.residual[:] = ds.x - expected
        return _inf_norm(ds.residual)

    def input_operator(self, ds: FirstOrderLinearDS, block: np.ndarray) -> np.ndarray:
        return self._discretise(ds)["psi"] @ block


# ----------------------------------------------------------------------
# Lagrangian schemes
# ----------------------------------------------------------------------
class MoreauJeanOSI(OneStepIntegrator):
    """Moreau-Jean velocity-level scheme for linear Lagrangian systems.

    ``W (v_{k+1} - v_free) = p_{k+1}`` with ``W = M + h θ C + h² θ² K`` and
    ``q_{k+1} = q_k + h [θ v_{k+1} + (1 - θ) v_k]``. Impacts obey the Newton
    restitution law at velocity level (problem level 1).

    Parameters
    ----------
    theta : float
        θ-method parameter for the smooth forces.
    gamma : float
        Weight of the velocity in the predicted gap ``y0 + γ h y1`` used by
        the activation rule.
    """

    integrator_type = "moreau_jean"
    supported_ds = (LagrangianLinearDS,)
    supported_relations = (LagrangianLinearTIR,)
    level_min_for_output = 0
    level_max_for_output = 1
    level_min_for_input = 1
    level_max_for_input = 1
    level_for_problem = 1

    def __init__(self, theta: float = 0.5, gamma: float = 0.5):
        super().__init__()
        theta = float(theta)
        gamma = float(gamma)
        if not (0.0 <= theta <= 1.0):
            raise ConfigurationError(f"theta must lie in [0, 1], got {theta}")
        if not (0.0 <= gamma <= 1.0):
            raise ConfigurationError(f"gamma must lie in [0, 1], got {gamma}")
        self.theta = theta
        self.gamma = gamma

    def number_of_index_sets(self) -> int:
        return 2

    def initialize_for_system(self, ds: LagrangianLinearDS) -> None:
        super().initialize_for_system(ds)
        self._work[ds.number]["mass_lu"] = lu_factor(ds.mass)

    def _iteration_matrix(self, ds: LagrangianLinearDS):
        work = self._work[ds.number]
        h = self.time_step
        if work["h"] != h:
            th = self.theta
            work["W"] = ds.mass + h * th * ds.C + h * h * th * th * ds.K
            work["lu"] = lu_factor(work["W"])
            work["h"] = h
        return work["lu"]

    def compute_free_state_ds(self, ds: LagrangianLinearDS) -> None:
        lu = self._iteration_matrix(ds)
        h, th = self.time_step, self.theta
        qk, vk = ds.q_memory(0), ds.v_memory(0)
        fk = ds.forces(self.t0, qk, vk)
        rhs = ds.mass @ vk + h * (
            (1.0 - th) * fk + th * ds.fext(self.t1) - th * (ds.K @ qk) - h * th * (1.0 - th) * (ds.K @ vk)
        )
        ds.v_free[:] = lu_solve(lu, rhs)

    def update_state_ds(self, ds: LagrangianLinearDS, level: int = 0) -> None:
        lu = self._work[ds.number]["lu"]
        h, th = self.time_step, self.theta
        ds.v[:] = ds.v_free + lu_solve(lu, ds.p[1])
        ds.q[:] = ds.q_memory(0) + h * (th * ds.v + (1.0 - th) * ds.v_memory(0))
        ds._sync_x()

    def _velocity_step_position(self, ds: LagrangianLinearDS) -> np.ndarray:
        return ds.q

    def compute_residu_ds(self, ds: LagrangianLinearDS) -> float:
        h, th = self.time_step, self.theta
        qk, vk = ds.q_memory(0), ds.v_memory(0)
        q = self._velocity_step_position(ds)
        forces = th * ds.forces(self.t1, q, ds.v) + (1.0 - th) * ds.forces(self.t0, qk, vk)
        ds.residual[:] = ds.mass @ (ds.v - vk) - h * forces - ds.p[1]
        return _inf_norm(ds.residual)

    def _concat(self, inter: Interaction, attr: str) -> np.ndarray:
        return np.concatenate([getattr(ds, attr) for ds in self.nsds.ds_of(inter)])

    def update_output_interaction(self, inter: Interaction, time: float, level: int) -> None:
        if level == 0:
            inter.y[0][:] = inter.relation.position_output(self._concat(inter, "q"))
        elif level == 1:
            inter.y[1][:] = inter.relation.velocity_output(self._concat(inter, "v"))
        else:
            raise NotImplementedAtThisLevel(f"{type(self).__name__}: no output at level {level}")

    def free_output(self, inter: Interaction, level: int) -> np.ndarray:
        v_free = self._concat(inter, "v_free")
        return inter.relation.velocity_output(v_free) + inter.nslaw.impact_shift(inter.y_old(1))

    def input_operator(self, ds: LagrangianLinearDS, block: np.ndarray) -> np.ndarray:
        return lu_solve(self._work[ds.number]["lu"], block)

    def add_interaction_in_index_set(self, inter: Interaction, i: int) -> bool:
        if i != 1:
            raise NotImplementedAtThisLevel(f"{type(self).__name__}: no index set {i}")
        predicted = inter.y[0] + self.gamma * self.time_step * inter.y[1]
        return bool(np.any(predicted <= self.tolerance))

    def remove_interaction_from_index_set(self, inter: Interaction, i: int) -> bool:
        if i != 1:
            raise NotImplementedAtThisLevel(f"{type(self).__name__}: no index set {i}")
        return bool(np.all(inter.lambda_[1] <= self.tolerance))


class MoreauJeanCombinedProjectionOSI(MoreauJeanOSI):
    """Moreau-Jean velocity step followed by a projection on the position constraints.

    IndexSet_1 holds the closed contacts (``y0 <= tol``) and drives the
    velocity-level impact problem. IndexSet_2 follows IndexSet_1 and
    selects the interactions on which residual penetration is removed by a
    position-level complementarity problem solved with the multipliers of
    level 0.
    """

    integrator_type = "moreau_jean_combined_projection"
    level_min_for_input = 1
    level_max_for_input = 1

    def __init__(self, theta: float = 0.5, projection_solver=None, max_projection_iterations: int = 1000):
        super().__init__(theta=theta, gamma=0.0)
        self.projection_solver = projection_solver or projected_gauss_seidel
        self.max_projection_iterations = int(max_projection_iterations)
        self.n_projections = 0

    def number_of_index_sets(self) -> int:
        return 3

    # Newton residuals use the position reached by the velocity step, before projection
    def initialize_for_system(self, ds: LagrangianLinearDS) -> None:
        super().initialize_for_system(ds)
        self._work[ds.number]["q_velocity"] = ds.q.copy()

    def compute_initial_newton_state(self) -> None:
        for ds in self.dynamical_systems():
            self._work[ds.number]["q_velocity"] = ds.q.copy()

    def update_state_ds(self, ds: LagrangianLinearDS, level: int = 0) -> None:
        super().update_state_ds(ds, level)
        self._work[ds.number]["q_velocity"] = ds.q.copy()

    def _velocity_step_position(self, ds: LagrangianLinearDS) -> np.ndarray:
        return self._work[ds.number]["q_velocity"]

    def add_interaction_in_index_set(self, inter: Interaction, i: int) -> bool:
        if i == 1:
            return bool(np.any(inter.y[0] <= self.tolerance))
        if i == 2:
            return True
        raise NotImplementedAtThisLevel(f"{type(self).__name__}: no index set {i}")

    def remove_interaction_from_index_set(self, inter: Interaction, i: int) -> bool:
        if i == 1:
            return bool(np.all(inter.y[0] > self.tolerance))
        if i == 2:
            return False
        raise NotImplementedAtThisLevel(f"{type(self).__name__}: no index set {i}")

    def project_on_constraints(self, time: float) -> None:
        active = self.interactions_in(self.topology.index_set(2))
        if not active:
            return
        for inter in active:
            self.update_output_interaction(inter, time, 0)
        if all(np.all(inter.y[0] >= -self.tolerance) for inter in active):
            return

        offsets = [0]
        for inter in active:
            offsets.append(offsets[-1] + inter.size)
        n = offsets[-1]
        W = np.zeros((n, n))
        q = np.zeros(n)
        for a, inter_a in enumerate(active):
            sa = slice(offsets[a], offsets[a + 1])
            q[sa] = inter_a.y[0]
            for b, inter_b in enumerate(active):
                sb = slice(offsets[b], offsets[b + 1])
                W[sa, sb] = self._position_block(inter_a, inter_b)

        data = ProblemData(
            W=W,
            q=q,
            laws=[ComplementarityConditionNSL(inter.size) for inter in active],
            interactions=[inter.number for inter in active],
            offsets=offsets,
            tolerance=self.tolerance,
            max_iterations=self.max_projection_iterations,
        )
        result = self.projection_solver(data)
        self.n_projections += 1
        if result.info != 0:
            self.diagnostics.warning(
                "Position projection did not converge at t=%.6g (info=%d, error=%.3e)",
                time, result.info, result.error,
            )
            self.diagnostics.record("projection_failure", t=time, info=result.info)

        for a, inter in enumerate(active):
            inter.lambda_[0][:] = result.z[offsets[a]:offsets[a + 1]]
        for ds in self.dynamical_systems():
            p0 = ds.p[0]
            p0[:] = 0.0
            for k in self.nsds.interactions_of(ds.number):
                inter = self.nsds.interaction(k)
                if k not in self.topology.index_set(2):
                    continue
                slot = inter.ds_numbers.index(ds.number)
                p0 += inter.relation.input_block(inter.slices[slot]) @ inter.lambda_[0]
            if np.any(p0):
                ds.q[:] = ds.q + lu_solve(self._work[ds.number]["mass_lu"], p0)
                ds._sync_x()

    def _position_block(self, inter_i: Interaction, inter_j: Interaction) -> np.ndarray:
        block = np.zeros((inter_i.size, inter_j.size))
        for slot_i, k in enumerate(inter_i.ds_numbers):
            if k not in inter_j.ds_numbers:
                continue
            slot_j = inter_j.ds_numbers.index(k)
            mass_lu = self._work[k]["mass_lu"]
            H_i = inter_i.relation.output_block(inter_i.slices[slot_i])
            Ht_j = inter_j.relation.input_block(inter_j.slices[slot_j])
            block += H_i @ lu_solve(mass_lu, Ht_j)
        return block


INTEGRATORS = {
    cls.integrator_type: cls
    for cls in (EulerMoreauOSI, ZeroOrderHoldOSI, MoreauJeanOSI, MoreauJeanCombinedProjectionOSI)
}


def make_integrator(kind: str, **kwargs: Any) -> OneStepIntegrator:
    try:
        cls = INTEGRATORS[kind]
    except KeyError:
        raise ConfigurationError(
            f"Unknown integrator {kind!r}; expected one of {sorted(INTEGRATORS)}"
        ) from None
    return cls(**kwargs)
