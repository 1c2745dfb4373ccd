"""Interactions and the nonsmooth dynamical system container.

Dynamical systems and interactions live in flat lists owned by
:class:`NonSmoothDynamicalSystem`; everything else refers to them by their
integer number. Numbers are assigned at insertion and never change, so the
insertion order is also the deterministic iteration order used everywhere.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Dict, List, Optional, Sequence, Union

import numpy as np

from .dynamical_systems import DynamicalSystem
from .errors import ConfigurationError
from .laws import NonSmoothLaw
from .relations import Relation

logger = logging.getLogger(__name__)

# Derivative levels stored on every interaction (position, velocity, force)
N_LEVELS = 3


class Interaction:
    """A nonsmooth law attached to one or two dynamical systems through a relation.

    Attributes
    ----------
    y, lambda_ : list of ndarray
        Output and multiplier, one vector per derivative level.
    y_newton, lambda_newton : list of ndarray
        Copies taken at the start of each Newton iteration.
    """

    def __init__(self, nslaw: NonSmoothLaw, relation: Relation, name: Optional[str] = None):
        self.nslaw = nslaw
        self.relation = relation
        self.name = name
        self.number: Optional[int] = None
        self.ds_numbers: tuple = ()
        self.slices: List[slice] = []
        m = nslaw.size
        self.y = [np.zeros(m) for _ in range(N_LEVELS)]
        self.lambda_ = [np.zeros(m) for _ in range(N_LEVELS)]
        self.y_newton = [np.zeros(m) for _ in range(N_LEVELS)]
        self.lambda_newton = [np.zeros(m) for _ in range(N_LEVELS)]
        self._memory: Deque[Dict[str, List[np.ndarray]]] = deque(maxlen=1)

    @property
    def size(self) -> int:
        return self.nslaw.size

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        return f"inter{self.number}" if self.number is not None else "Interaction"

    def bind(self, number: int, ds_list: Sequence[DynamicalSystem]) -> None:
        self.relation.check_dimensions(ds_list, self.size)
        self.number = number
        self.ds_numbers = tuple(ds.number for ds in ds_list)
        self.slices = []
        offset = 0
        for n in self.relation.state_sizes(ds_list):
            self.slices.append(slice(offset, offset + n))
            offset += n

    # ------------------------------------------------------------------
    # Memory
    # ------------------------------------------------------------------
    def init_memory(self, depth: int) -> None:
        self._memory = deque(maxlen=max(1, int(depth)))

    def swap_in_memory(self) -> None:
        self._memory.appendleft({"y": [y.copy() for y in self.y]})

    def y_old(self, level: int) -> np.ndarray:
        if not self._memory:
            return self.y[level]
        return self._memory[0]["y"][level]

    def save_newton_state(self) -> None:
        for level in range(N_LEVELS):
            self.y_newton[level][:] = self.y[level]
            self.lambda_newton[level][:] = self.lambda_[level]

    def reset_lambdas(self, level: Optional[int] = None) -> None:
        levels = range(N_LEVELS) if level is None else (level,)
        for lv in levels:
            self.lambda_[lv][:] = 0.0

    def is_admissible(self, level: int, tol: float) -> bool:
        y = self.y[level] + self.nslaw.impact_shift(self.y_old(level))
        return self.nslaw.is_admissible(y, self.lambda_[level], tol)

    def __repr__(self) -> str:
        return f"Interaction({self.label}, law={self.nslaw!r}, ds={self.ds_numbers})"


class NonSmoothDynamicalSystem:
    """Owner of all dynamical systems and interactions of a model.

    Parameters
    ----------
    t0 : float
        Initial time.
    T : float, optional
        Final time, used when no explicit end time is passed to the simulation.
    """

    def __init__(self, t0: float = 0.0, T: Optional[float] = None):
        self.t0 = float(t0)
        self.T = None if T is None else float(T)
        self.dynamical_systems: List[DynamicalSystem] = []
        self.interactions: List[Interaction] = []
        self._ds_links: Dict[int, List[int]] = {}

    @property
    def number_of_ds(self) -> int:
        return len(self.dynamical_systems)

    @property
    def number_of_interactions(self) -> int:
        return len(self.interactions)

    def insert_dynamical_system(self, ds: DynamicalSystem) -> int:
        if ds.number is not None:
            raise ConfigurationError(f"{ds.label} is already part of a model")
        ds.number = len(self.dynamical_systems)
        self.dynamical_systems.append(ds)
        self._ds_links[ds.number] = []
        logger.debug("Inserted %s as ds%d", type(ds).__name__, ds.number)
        return ds.number

    def _owns(self, ds: DynamicalSystem) -> bool:
        return (
            ds.number is not None
            and ds.number < len(self.dynamical_systems)
            and self.dynamical_systems[ds.number] is ds
        )

    def link(self, inter: Interaction, ds1: DynamicalSystem, ds2: Optional[DynamicalSystem] = None) -> int:
        """Attach ``inter`` to one or two inserted systems; returns its number."""
        if inter.number is not None:
            raise ConfigurationError(f"{inter.label} is already linked")
        ds_list = [ds1] if ds2 is None else [ds1, ds2]
        for ds in ds_list:
            if not self._owns(ds):
                raise ConfigurationError(f"{ds.label} must be inserted before linking")
        if ds2 is not None and ds1 is ds2:
            raise ConfigurationError("an interaction cannot link a system to itself")
        inter.bind(len(self.interactions), ds_list)
        self.interactions.append(inter)
        for ds in ds_list:
            self._ds_links[ds.number].append(inter.number)
        logger.debug("Linked %s to ds%s", inter.label, inter.ds_numbers)
        return inter.number

    def dynamical_system(self, number: int) -> DynamicalSystem:
        return self.dynamical_systems[number]

    def interaction(self, number: int) -> Interaction:
        return self.interactions[number]

    def ds_of(self, inter: Interaction) -> List[DynamicalSystem]:
        return [self.dynamical_systems[k] for k in inter.ds_numbers]

    def interactions_of(self, ds_number: int) -> List[int]:
        return list(self._ds_links.get(ds_number, ()))

    def dynamical_system_by_name(self, name: str) -> DynamicalSystem:
        for ds in self.dynamical_systems:
            if ds.name == name:
                return ds
        raise KeyError(name)

    def interaction_by_name(self, name: str) -> Interaction:
        for inter in self.interactions:
            if inter.name == name:
                return inter
        raise KeyError(name)

    def set_osi(self, ds: Union[int, DynamicalSystem], osi) -> None:
        if isinstance(ds, int):
            ds = self.dynamical_systems[ds]
        if not self._owns(ds):
            raise ConfigurationError(f"{ds.label} is not part of this model")
        osi.associate(ds)

    def osi_of(self, inter: Interaction):
        osis = {id(self.dynamical_systems[k].osi): self.dynamical_systems[k].osi for k in inter.ds_numbers}
        if len(osis) != 1:
            raise ConfigurationError(
                f"{inter.label}: linked systems must share a single one-step integrator"
            )
        osi = next(iter(osis.values()))
        if osi is None:
            raise ConfigurationError(f"{inter.label}: linked systems have no integrator")
        return osi

    def reset_lambdas(self) -> None:
        for inter in self.interactions:
            inter.reset_lambdas()
