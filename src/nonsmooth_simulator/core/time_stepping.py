"""Event-capturing time-stepping simulation.

Each step runs a Newton loop whose iteration is

1. free state of every dynamical system (parallel per system),
2. nonsmooth problems, one per problem level, on the active index sets (barrier),
3. input and state update (parallel per system), optional projection,
4. output update (parallel per interaction),
5. index-set update (barrier, one deterministic pass per level),
6. residuals and convergence test.

Use from scripts or tests as::

    from nonsmooth_simulator.core.time_stepping import TimeStepping

    with TimeStepping(nsds, td, params={"newton_options": "linear"}) as sim:
        sim.associate(osi, ds)
        df = sim.run()
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from .diagnostics import Diagnostics
from .errors import ConfigurationError, NonConvergenceError, SolverFailureError
from .graph import NonSmoothDynamicalSystem
from .index_sets import Topology
from .integrators import OneStepIntegrator
from .nonsmooth_problem import OneStepNSProblem
from .time_discretisation import EventsManager, TimeDiscretisation

logger = logging.getLogger(__name__)


class NewtonOptions(str, Enum):
    LINEAR = "linear"
    LINEAR_IMPLICIT = "linear_implicit"
    NONLINEAR = "nonlinear"


class NewtonStatus(str, Enum):
    NOT_STARTED = "not_started"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITERATION_REACHED = "max_iteration_reached"


@dataclass
class NewtonLoopState:
    """Bookkeeping of the Newton loop of the current step.

    ``history`` holds ``(iteration, residu_ds, residu_y, residu_r)`` tuples,
    starting with iteration 0 (residuals before the first correction).
    """

    status: NewtonStatus = NewtonStatus.NOT_STARTED
    iterations: int = 0
    cumulative_iterations: int = 0
    residu_ds: float = 0.0
    residu_y: float = 0.0
    residu_r: float = 0.0
    solver_info: int = 0
    history: List[Tuple[int, float, float, float]] = field(default_factory=list)

    def start_step(self) -> None:
        self.status = NewtonStatus.NOT_STARTED
        self.iterations = 0
        self.residu_ds = self.residu_y = self.residu_r = 0.0
        self.solver_info = 0
        self.history = []

    @property
    def residual(self) -> float:
        return max(self.residu_ds, self.residu_y, self.residu_r)


@dataclass
class TimeSteppingParams:
    """Newton-loop, solver and failure-policy settings of a simulation."""

    # Newton loop
    newton_tolerance: float = 1e-6
    newton_max_iteration: int = 50
    newton_options: str = NewtonOptions.NONLINEAR.value
    compute_residu_y: bool = False
    compute_residu_r: bool = False
    display_newton_convergence: bool = False

    # Multipliers and last-iteration shortcuts
    reset_all_lambda: bool = True
    skip_reset_lambdas: bool = False
    skip_last_update_output: bool = False
    skip_last_update_input: bool = False

    # Failure policy
    newton_warning_on_nonconvergence: bool = True
    warning_nonsmooth_solver: bool = False

    # Nonsmooth problem (shared by the solver and the activation rules)
    nonsmooth_tolerance: float = 1e-8
    solver_max_iterations: int = 1000

    # Fork-join parallelism over dynamical systems
    n_workers: int = 1

    def __post_init__(self):
        if not self.newton_tolerance > 0.0:
            raise ConfigurationError(f"newton_tolerance must be > 0, got {self.newton_tolerance}")
        if int(self.newton_max_iteration) < 1:
            raise ConfigurationError(
                f"newton_max_iteration must be >= 1, got {self.newton_max_iteration}"
            )
        self.newton_max_iteration = int(self.newton_max_iteration)
        try:
            self.newton_options = NewtonOptions(str(self.newton_options).lower()).value
        except ValueError:
            raise ConfigurationError(
                f"newton_options must be one of {[m.value for m in NewtonOptions]}, "
                f"got {self.newton_options!r}"
            ) from None
        if not self.nonsmooth_tolerance > 0.0:
            raise ConfigurationError(
                f"nonsmooth_tolerance must be > 0, got {self.nonsmooth_tolerance}"
            )
        if int(self.solver_max_iterations) < 1:
            raise ConfigurationError(
                f"solver_max_iterations must be >= 1, got {self.solver_max_iterations}"
            )
        if int(self.n_workers) < 1:
            raise ConfigurationError(f"n_workers must be >= 1, got {self.n_workers}")
        self.n_workers = int(self.n_workers)

    @property
    def mode(self) -> NewtonOptions:
        return NewtonOptions(self.newton_options)


def get_default_time_stepping_params() -> dict:
    """
    Default Newton/solver settings as a plain dict, so that they can be
    updated from YAML/JSON configs and passed into TimeSteppingParams(**params).
    """
    return asdict(TimeSteppingParams())


SolverFailurePolicy = Callable[[int, "TimeStepping"], None]


def default_check_solver_output(info: int, sim: "TimeStepping") -> None:
    """Count the failure, then warn or raise according to ``warning_nonsmooth_solver``."""
    problem = sim.failed_problem if sim.failed_problem is not None else sim.problem
    size = problem.last_size
    sim.diagnostics.record(
        "solver_failures", step_idx=sim.step_index, t=sim.next_time, info=info, problem_size=size
    )
    if sim.params.warning_nonsmooth_solver:
        sim.diagnostics.warning(
            "Nonsmooth solver failed at step %d (t=%.6g): info=%d, problem size %d",
            sim.step_index, sim.next_time, info, size,
        )
        return
    raise SolverFailureError(
        f"Nonsmooth solver failed at step {sim.step_index} (t={sim.next_time:.6g}): info={info}",
        info=info,
        step_idx=sim.step_index,
        t=sim.next_time,
        problem_size=size,
    )


class TimeStepping:
    """Time-stepping simulation of a nonsmooth dynamical system.

    Parameters
    ----------
    nsds : NonSmoothDynamicalSystem
        Model (dynamical systems and interactions).
    td : TimeDiscretisation
        Time grid.
    integrators : iterable of OneStepIntegrator, optional
        Integrators already associated with their systems. More can be
        added with :meth:`associate` or :meth:`insert_integrator`.
    problem : OneStepNSProblem, optional
        Nonsmooth problem; a projected Gauss-Seidel one is created if omitted.
        When the integrators declare several problem levels, one more
        problem per extra level is created with the same solver.
    params : TimeSteppingParams or dict, optional
        Settings; a dict may contain only overrides of the defaults.
    diagnostics : Diagnostics, optional
        Logging and counters sink shared with the integrators.
    check_solver_output : callable, optional
        ``(info, simulation) -> None`` called when the solver status is
        nonzero; raising from it aborts the run.
    T : float, optional
        Final time; defaults to ``nsds.T``.
    """

    def __init__(
        self,
        nsds: NonSmoothDynamicalSystem,
        td: TimeDiscretisation,
        integrators: Optional[Iterable[OneStepIntegrator]] = None,
        problem: Optional[OneStepNSProblem] = None,
        params: Union[TimeSteppingParams, Dict[str, Any], None] = None,
        diagnostics: Optional[Diagnostics] = None,
        check_solver_output: Optional[SolverFailurePolicy] = None,
        T: Optional[float] = None,
    ):
        self.nsds = nsds
        self.td = td
        if params is None:
            params = TimeSteppingParams()
        elif isinstance(params, dict):
            allowed = {f.name for f in fields(TimeSteppingParams)}
            unknown = sorted(set(params) - allowed)
            if unknown:
                raise ConfigurationError(f"Unknown time-stepping setting(s): {', '.join(unknown)}")
            params = TimeSteppingParams(**params)
        self.params = params
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()
        self.check_solver_output: SolverFailurePolicy = check_solver_output or default_check_solver_output
        self.integrators: List[OneStepIntegrator] = []
        for osi in integrators or ():
            self.insert_integrator(osi)
        self.problem = problem if problem is not None else OneStepNSProblem()
        self.problems: List[OneStepNSProblem] = []
        self.failed_problem: Optional[OneStepNSProblem] = None
        self._problem_level: Dict[int, int] = {}

        T = nsds.T if T is None else T
        if T is None:
            raise ConfigurationError("final time T must be given to the model or the simulation")
        self.events = EventsManager(td, T)
        self.topology = Topology(nsds)
        self.newton = NewtonLoopState()

        self.initialized = False
        self.records: List[Dict[str, Any]] = []
        self.converged_all_steps = True
        self.max_iters_step = 0
        self.max_residual_seen = 0.0
        self._executor: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------
    def insert_integrator(self, osi: OneStepIntegrator) -> None:
        if all(osi is not other for other in self.integrators):
            self.integrators.append(osi)

    def associate(self, osi: OneStepIntegrator, ds) -> None:
        self.insert_integrator(osi)
        self.nsds.set_osi(ds, osi)

    @property
    def step_index(self) -> int:
        return self.events.k

    @property
    def current_time(self) -> float:
        return self.events.current_time

    @property
    def next_time(self) -> float:
        return self.events.next_time

    @property
    def time_step(self) -> float:
        return self.events.time_step

    def _fan_out(self, func: Callable[[Any], Any], items: Iterable[Any]) -> List[Any]:
        items = list(items)
        if self._executor is None or len(items) < 2:
            return [func(item) for item in items]
        return list(self._executor.map(func, items))

    def initialize(self) -> None:
        """Bind integrators, allocate memories, compute initial outputs and index sets."""
        if self.initialized:
            return
        if not self.integrators:
            raise ConfigurationError("simulation has no one-step integrator")
        for ds in self.nsds.dynamical_systems:
            if ds.osi is None or all(ds.osi is not osi for osi in self.integrators):
                raise ConfigurationError(f"{ds.label} has no integrator in this simulation")

        p = self.params
        n_sets = max(osi.number_of_index_sets() for osi in self.integrators)
        self.topology.resize(n_sets)
        if p.n_workers > 1:
            self._executor = ThreadPoolExecutor(max_workers=p.n_workers, thread_name_prefix="nsds")
        for osi in self.integrators:
            osi.bind(self.nsds, self.topology, self.diagnostics, p.nonsmooth_tolerance, self._fan_out)
        for inter in self.nsds.interactions:
            self.nsds.osi_of(inter).initialize_for_interaction(inter)
        for osi in self.integrators:
            osi.initialize(self.current_time, self.time_step)

        self._bind_problems()

        for osi in self.integrators:
            osi.update_output(self.current_time)
        self._swap_in_memory()
        self.update_index_sets()
        self.initialized = True
        logger.debug(
            "Initialized simulation: %d systems, %d interactions, %d index sets, problem levels %s",
            self.nsds.number_of_ds, self.nsds.number_of_interactions, n_sets,
            [problem.level for problem in self.problems],
        )

    def _bind_problems(self) -> None:
        """One nonsmooth problem per distinct ``level_for_problem``, in increasing level order."""
        p = self.params
        groups: Dict[int, List[OneStepIntegrator]] = {}
        for osi in self.integrators:
            groups.setdefault(osi.level_for_problem, []).append(osi)
        levels = sorted(groups)
        if self.problem.level is None:
            self.problem.level = levels[-1]
        elif self.problem.level not in groups:
            if len(levels) > 1:
                raise ConfigurationError(
                    f"problem level {self.problem.level} matches none of the integrator "
                    f"problem levels {levels}"
                )
            groups = {self.problem.level: groups[levels[0]]}
            levels = [self.problem.level]

        self.problems = []
        self._problem_level = {}
        for level in levels:
            if level == self.problem.level:
                problem = self.problem
            else:
                problem = OneStepNSProblem(solver=self.problem.solver, level=level)
            problem.bind(
                self.nsds, self.topology, p.nonsmooth_tolerance, p.solver_max_iterations,
                integrators=groups[level],
            )
            self.problems.append(problem)
            for osi in groups[level]:
                self._problem_level[id(osi)] = level

    def problem_level_of(self, inter) -> int:
        return self._problem_level[id(self.nsds.osi_of(inter))]

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> "TimeStepping":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Step acceptance
    # ------------------------------------------------------------------
    def _swap_in_memory(self) -> None:
        for ds in self.nsds.dynamical_systems:
            ds.swap_in_memory()
        for inter in self.nsds.interactions:
            inter.swap_in_memory()

    def reset_lambdas(self) -> None:
        self.nsds.reset_lambdas()
        for ds in self.nsds.dynamical_systems:
            ds.reset_nonsmooth_part()

    def next_step(self) -> None:
        """Accept the current step: advance the clock, persist state, reset multipliers."""
        self.events.advance()
        self._swap_in_memory()
        if self.params.reset_all_lambda and not self.params.skip_reset_lambdas:
            self.reset_lambdas()

    # ------------------------------------------------------------------
    # Newton loop building blocks
    # ------------------------------------------------------------------
    def compute_free_state(self) -> None:
        for osi in self.integrators:
            osi.compute_free_state()

    def compute_one_step_ns_problem(self) -> int:
        """Solve every problem level; nonzero statuses go through ``check_solver_output``.

        Returns the largest status seen.
        """
        worst = 0
        self.failed_problem = None
        for problem in self.problems:
            info = problem.compute(self.next_time)
            if info != 0:
                self.failed_problem = problem
                self.check_solver_output(info, self)
                worst = max(worst, info)
        return worst

    def update_input(self, level: Optional[int] = None) -> None:
        for osi in self.integrators:
            osi.update_input(self.next_time, level)

    def update_state(self, level: Optional[int] = None) -> None:
        for osi in self.integrators:
            osi.update_state(0 if level is None else level)

    def update_output(self, level: Optional[int] = None) -> None:
        for osi in self.integrators:
            osi.update_output(self.next_time, level)

    def project_on_constraints(self) -> None:
        for osi in self.integrators:
            osi.project_on_constraints(self.next_time)

    def update_index_set(self, i: int) -> None:
        """Evaluate the activation rule once per interaction of IndexSet_{i-1}.

        Decisions are collected first and applied in a single pass, so the
        outcome does not depend on the order in which rules see each other's
        effects.
        """
        to_add: List[int] = []
        to_remove: List[int] = []
        current = self.topology.index_set(i)
        for k in self.topology.index_set(i - 1):
            inter = self.nsds.interaction(k)
            osi = self.nsds.osi_of(inter)
            if i >= osi.number_of_index_sets():
                if k in current:
                    to_remove.append(k)
                continue
            if k in current:
                if osi.remove_interaction_from_index_set(inter, i):
                    to_remove.append(k)
            elif osi.add_interaction_in_index_set(inter, i):
                to_add.append(k)
        self.topology.apply(i, to_add, to_remove)
        if to_add or to_remove:
            logger.debug(
                "t=%.6g IndexSet_%d: +%s -%s -> %s",
                self.next_time, i, to_add, to_remove, current.as_list(),
            )

    def update_index_sets(self) -> None:
        for i in range(1, self.topology.number_of_index_sets):
            self.update_index_set(i)

    def _residuals(self) -> Tuple[float, float, float]:
        p = self.params
        t = self.next_time
        index_set = self.topology.index_set(0)
        residu_ds = max((osi.compute_residu() for osi in self.integrators), default=0.0)
        residu_y = 0.0
        residu_r = 0.0
        if p.compute_residu_y:
            residu_y = max(
                (osi.compute_residu_output(t, index_set) for osi in self.integrators), default=0.0
            )
        if p.compute_residu_r:
            residu_r = max(
                (osi.compute_residu_input(t, index_set) for osi in self.integrators), default=0.0
            )
        return residu_ds, residu_y, residu_r

    def initialize_newton_loop(self) -> None:
        state = self.newton
        state.start_step()
        for osi in self.integrators:
            osi.set_time_interval(self.current_time, self.next_time)
            osi.compute_initial_newton_state()
        residu_ds = max((osi.compute_residu() for osi in self.integrators), default=0.0)
        state.residu_ds = residu_ds
        state.history.append((0, residu_ds, 0.0, 0.0))
        state.status = NewtonStatus.ITERATING

    def newton_check_convergence(self, criterion: float) -> bool:
        state = self.newton
        p = self.params
        converged = state.residu_ds <= criterion
        if p.compute_residu_y:
            converged = converged and state.residu_y <= criterion
        if p.compute_residu_r:
            converged = converged and state.residu_r <= criterion
        return converged

    def newton_solve(self, criterion: float, max_step: int) -> NewtonStatus:
        """Run the Newton loop of the current step until convergence or ``max_step``."""
        p = self.params
        mode = p.mode
        linear = mode in (NewtonOptions.LINEAR, NewtonOptions.LINEAR_IMPLICIT)
        state = self.newton
        self.initialize_newton_loop()

        while state.status is NewtonStatus.ITERATING:
            state.iterations += 1
            state.cumulative_iterations += 1
            terminating = linear or state.iterations >= max_step

            for inter in self.nsds.interactions:
                inter.save_newton_state()
            if mode is not NewtonOptions.LINEAR:
                for osi in self.integrators:
                    osi.prepare_newton_iteration(self.next_time)

            self.compute_free_state()
            state.solver_info = self.compute_one_step_ns_problem()

            if not (p.skip_last_update_input and terminating):
                self.update_input()
            self.update_state()
            self.project_on_constraints()
            if not (p.skip_last_update_output and terminating and not p.compute_residu_y):
                self.update_output()
            self.update_index_sets()

            state.residu_ds, state.residu_y, state.residu_r = self._residuals()
            state.history.append((state.iterations, state.residu_ds, state.residu_y, state.residu_r))
            if p.display_newton_convergence:
                self.diagnostics.info(
                    "Newton step %d iteration %d: residu_ds=%.3e residu_y=%.3e residu_r=%.3e",
                    self.step_index, state.iterations, state.residu_ds, state.residu_y, state.residu_r,
                )

            if linear or self.newton_check_convergence(criterion):
                state.status = NewtonStatus.CONVERGED
            elif state.iterations >= max_step:
                state.status = NewtonStatus.MAX_ITERATION_REACHED

        if state.status is NewtonStatus.MAX_ITERATION_REACHED:
            self._handle_non_convergence()
        return state.status

    def _handle_non_convergence(self) -> None:
        state = self.newton
        self.converged_all_steps = False
        self.diagnostics.record(
            "newton_non_convergence",
            step_idx=self.step_index,
            t=self.next_time,
            iterations=state.iterations,
            residual=state.residual,
        )
        if self.params.newton_warning_on_nonconvergence:
            self.diagnostics.warning(
                "Newton solver did not converge at step %d (t=%.6g, %d iterations, residual=%.3e)",
                self.step_index, self.next_time, state.iterations, state.residual,
            )
            return
        raise NonConvergenceError(
            f"Newton solver did not converge at step {self.step_index} "
            f"(t={self.next_time:.6g}, {state.iterations} iterations, residual={state.residual:.3e})",
            step_idx=self.step_index,
            t=self.next_time,
            residual_norm=state.residual,
            iter_count=state.iterations,
            dt_effective=self.time_step,
            solver_type=self.params.newton_options,
            failure_stage="newton",
            state_snapshot={"cumulative_newton_iterations": state.cumulative_iterations},
        )

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------
    def advance_to_event(self) -> NewtonStatus:
        status = self.newton_solve(self.params.newton_tolerance, self.params.newton_max_iteration)
        self.max_iters_step = max(self.max_iters_step, self.newton.iterations)
        self.max_residual_seen = max(self.max_residual_seen, self.newton.residual)
        return status

    def compute_one_step(self) -> NewtonStatus:
        """Advance one step, record it and accept it."""
        self.initialize()
        if not self.events.has_next_event():
            raise RuntimeError(f"simulation already reached its final time T={self.events.final_t()}")
        status = self.advance_to_event()
        self._record(self.next_time, status)
        self.next_step()
        return status

    def run(self) -> pd.DataFrame:
        """Simulate up to the final time; one row per accepted step plus the initial state."""
        self.initialize()
        if not self.records:
            self._record(self.current_time, NewtonStatus.NOT_STARTED)
        while self.events.has_next_event():
            self.compute_one_step()
        logger.debug(
            "Simulation finished: %d steps, %d Newton iterations",
            self.events.k, self.newton.cumulative_iterations,
        )
        return self.results()

    def _record(self, t: float, status: NewtonStatus) -> None:
        state = self.newton
        row: Dict[str, Any] = {
            "step": self.step_index if status is NewtonStatus.NOT_STARTED else self.step_index + 1,
            "time": t,
            "newton_iterations": state.iterations if status is not NewtonStatus.NOT_STARTED else 0,
            "newton_status": status.value,
            "residu_ds": state.residu_ds,
            "residu_y": state.residu_y,
            "residu_r": state.residu_r,
            "solver_info": state.solver_info,
            "n_active": sum(len(problem.active_interactions()) for problem in self.problems),
        }
        for ds in self.nsds.dynamical_systems:
            row.update(zip(ds.state_labels(), ds.state_vector()))
        for inter in self.nsds.interactions:
            osi = self.nsds.osi_of(inter)
            level = self.problem_level_of(inter)
            for lv in osi.output_levels():
                self._put(row, f"{inter.label}.y{lv}", inter.y[lv])
            self._put(row, f"{inter.label}.lambda{level}", inter.lambda_[level])
            row[f"{inter.label}.active"] = inter.number in self.topology.index_set(level)
        self.records.append(row)

    @staticmethod
    def _put(row: Dict[str, Any], key: str, vec: np.ndarray) -> None:
        if vec.size == 1:
            row[key] = float(vec[0])
        else:
            for j, value in enumerate(vec):
                row[f"{key}[{j}]"] = float(value)

    def results(self) -> pd.DataFrame:
        df = pd.DataFrame(self.records)
        df.attrs["converged_all_steps"] = self.converged_all_steps
        df.attrs["max_iters_step"] = self.max_iters_step
        df.attrs["max_residual_seen"] = self.max_residual_seen
        df.attrs["cumulative_newton_iterations"] = self.newton.cumulative_iterations
        df.attrs["newton_non_convergence"] = self.diagnostics.count("newton_non_convergence")
        df.attrs["non_converged_steps"] = [
            ev.data["step_idx"] for ev in self.diagnostics.events_of("newton_non_convergence")
        ]
        df.attrs["solver_failures"] = self.diagnostics.count("solver_failures")
        df.attrs["n_steps"] = self.events.k
        df.attrs["h"] = self.td.h
        df.attrs["newton_options"] = self.params.newton_options
        df.attrs["nonsmooth_tolerance"] = self.params.nonsmooth_tolerance
        return df
