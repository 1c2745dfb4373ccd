"""Assembly of the one-step nonsmooth problem.

The problem couples every interaction of the active index set:

    w = W z + q,    (w_k, z_k) admissible for the law of interaction k

``q`` is the free output (the output the interaction would have without
constraint forces) and ``W`` the Delassus-type operator built block by block
by the integrators owning the interactions. The solver is an injected
callable; the orchestrator only relies on its status code.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

import numpy as np

from .errors import ConfigurationError
from .solvers import ProblemData, SolverFunction, SolverResult, projected_gauss_seidel

logger = logging.getLogger(__name__)


class OneStepNSProblem:
    """Builds and solves the nonsmooth problem on one index-set level.

    Parameters
    ----------
    solver : callable, optional
        ``solver(ProblemData) -> SolverResult``. Defaults to
        :func:`projected_gauss_seidel`.
    level : int, optional
        Index-set level to solve on. When omitted the simulation uses the
        ``level_for_problem`` of the integrators this problem serves.

    A simulation whose integrators declare different problem levels holds
    one problem per level; each problem then only collects the interactions
    owned by its own integrators.
    """

    def __init__(self, solver: Optional[SolverFunction] = None, level: Optional[int] = None):
        self.solver: SolverFunction = solver or projected_gauss_seidel
        self.level = level
        self.nsds = None
        self.topology = None
        self.tolerance = 1e-8
        self.max_iterations = 1000
        self.last_result: Optional[SolverResult] = None
        self.last_size = 0
        self.n_calls = 0
        self.integrators: Optional[List[Any]] = None

    def bind(
        self, nsds, topology, tolerance: float, max_iterations: int, integrators: Optional[List[Any]] = None
    ) -> None:
        self.nsds = nsds
        self.topology = topology
        self.integrators = None if integrators is None else list(integrators)
        self.tolerance = float(tolerance)
        self.max_iterations = int(max_iterations)
        if self.level is not None and not (0 <= self.level < topology.number_of_index_sets):
            raise ConfigurationError(
                f"problem level {self.level} outside available index sets "
                f"(0..{topology.number_of_index_sets - 1})"
            )

    def _serves(self, k: int) -> bool:
        if self.integrators is None:
            return True
        osi = self.nsds.osi_of(self.nsds.interaction(k))
        return any(osi is other for other in self.integrators)

    def active_interactions(self) -> List[int]:
        return [k for k in self.topology.index_set(self.level) if self._serves(k)]

    def assemble(self, time: float) -> Optional[ProblemData]:
        active = self.active_interactions()
        if not active:
            return None
        inters = [self.nsds.interaction(k) for k in active]
        osis = [self.nsds.osi_of(inter) for inter in inters]

        offsets = [0]
        for inter in inters:
            offsets.append(offsets[-1] + inter.size)
        n = offsets[-1]
        W = np.zeros((n, n))
        q = np.zeros(n)
        for a, (inter_a, osi) in enumerate(zip(inters, osis)):
            sa = slice(offsets[a], offsets[a + 1])
            q[sa] = osi.free_output(inter_a, self.level)
            for b, inter_b in enumerate(inters):
                if a != b and not set(inter_a.ds_numbers) & set(inter_b.ds_numbers):
                    continue
                sb = slice(offsets[b], offsets[b + 1])
                W[sa, sb] = osi.coupling_block(inter_a, inter_b, self.level)

        return ProblemData(
            W=W,
            q=q,
            laws=[inter.nslaw for inter in inters],
            interactions=active,
            offsets=offsets,
            tolerance=self.tolerance,
            max_iterations=self.max_iterations,
        )

    def compute(self, time: float) -> int:
        """Solve on the current active set and scatter the multipliers.

        Returns the solver status; ``0`` when nothing is active.
        """
        level = self.level
        active = set(self.active_interactions())
        for inter in self.nsds.interactions:
            if inter.number not in active and self._serves(inter.number):
                inter.lambda_[level][:] = 0.0

        data = self.assemble(time)
        self.last_size = 0 if data is None else data.size
        if data is None:
            self.last_result = None
            return 0

        result = self.solver(data)
        self.n_calls += 1
        self.last_result = result
        for a, k in enumerate(data.interactions):
            self.nsds.interaction(k).lambda_[level][:] = result.z[data.offsets[a]:data.offsets[a + 1]]
        logger.debug(
            "Nonsmooth problem at t=%.6g: size=%d info=%d iterations=%d error=%.3e",
            time, data.size, result.info, result.iterations, result.error,
        )
        return int(result.info)
