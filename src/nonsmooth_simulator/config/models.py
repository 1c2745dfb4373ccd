from __future__ import annotations

from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

Vector = List[float]
Matrix = List[List[float]]


class ConfigBase(BaseModel):
    model_config = {"extra": "forbid"}


def _check_matrix(value: Optional[Matrix], name: str) -> Optional[Matrix]:
    if value is None:
        return value
    if not value or any(len(row) != len(value[0]) for row in value):
        raise ValueError(f"{name} must be a non-empty rectangular matrix")
    return value


# ----------------------------------------------------------------------
# Time grid and Newton/solver settings
# ----------------------------------------------------------------------
class TimeGrid(ConfigBase):
    t0: float = 0.0
    h: float
    T: float

    @field_validator("h")
    @classmethod
    def _h_positive(cls, value: float) -> float:
        if value <= 0.0:
            raise ValueError("h must be > 0")
        return value

    @model_validator(mode="after")
    def _t_end_after_start(self) -> "TimeGrid":
        if self.T <= self.t0:
            raise ValueError("T must be greater than t0")
        return self


class SimulationSettings(ConfigBase):
    newton_tolerance: float = 1e-6
    newton_max_iteration: int = 50
    newton_options: Literal["linear", "linear_implicit", "nonlinear"] = "nonlinear"
    compute_residu_y: bool = False
    compute_residu_r: bool = False
    display_newton_convergence: bool = False
    reset_all_lambda: bool = True
    skip_reset_lambdas: bool = False
    skip_last_update_output: bool = False
    skip_last_update_input: bool = False
    newton_warning_on_nonconvergence: bool = True
    warning_nonsmooth_solver: bool = False
    nonsmooth_tolerance: float = 1e-8
    solver_max_iterations: int = 1000
    n_workers: int = 1

    @field_validator("newton_tolerance", "nonsmooth_tolerance")
    @classmethod
    def _tol_positive(cls, value: float) -> float:
        if value <= 0.0:
            raise ValueError("tolerance must be > 0")
        return value

    @field_validator("newton_max_iteration", "solver_max_iterations", "n_workers")
    @classmethod
    def _count_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value


# ----------------------------------------------------------------------
# Dynamical systems
# ----------------------------------------------------------------------
class FirstOrderLinearDSSpec(ConfigBase):
    type: Literal["first_order_linear"]
    name: str
    x0: Vector
    A: Matrix
    b: Optional[Vector] = None

    @field_validator("A")
    @classmethod
    def _a_matrix(cls, value: Matrix) -> Matrix:
        return _check_matrix(value, "A")

    @model_validator(mode="after")
    def _dimensions(self) -> "FirstOrderLinearDSSpec":
        n = len(self.x0)
        if n == 0:
            raise ValueError("x0 must not be empty")
        if len(self.A) != n or len(self.A[0]) != n:
            raise ValueError(f"A must be {n}x{n}")
        if self.b is not None and len(self.b) != n:
            raise ValueError(f"b must have {n} entries")
        return self


class LagrangianLinearDSSpec(ConfigBase):
    type: Literal["lagrangian_linear"]
    name: str
    q0: Vector
    v0: Vector
    mass: Union[float, Vector, Matrix]
    K: Optional[Matrix] = None
    C: Optional[Matrix] = None
    fext: Optional[Vector] = None

    @model_validator(mode="after")
    def _dimensions(self) -> "LagrangianLinearDSSpec":
        n = len(self.q0)
        if n == 0:
            raise ValueError("q0 must not be empty")
        if len(self.v0) != n:
            raise ValueError(f"v0 must have {n} entries")
        if isinstance(self.mass, float) and self.mass <= 0.0:
            raise ValueError("mass must be > 0")
        for name in ("K", "C"):
            mat = _check_matrix(getattr(self, name), name)
            if mat is not None and (len(mat) != n or len(mat[0]) != n):
                raise ValueError(f"{name} must be {n}x{n}")
        if self.fext is not None and len(self.fext) != n:
            raise ValueError(f"fext must have {n} entries")
        return self


DynamicalSystemSpec = Union[FirstOrderLinearDSSpec, LagrangianLinearDSSpec]


# ----------------------------------------------------------------------
# Laws and relations
# ----------------------------------------------------------------------
class ComplementarityLawSpec(ConfigBase):
    type: Literal["complementarity"]
    size: int = 1


class NewtonImpactLawSpec(ConfigBase):
    type: Literal["newton_impact"]
    e: float = 0.0
    size: int = 1

    @field_validator("e")
    @classmethod
    def _e_range(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("e must lie in [0, 1]")
        return value


class RelayLawSpec(ConfigBase):
    type: Literal["relay"]
    size: int = 1
    lb: float = -1.0
    ub: float = 1.0

    @model_validator(mode="after")
    def _bounds(self) -> "RelayLawSpec":
        if self.lb >= self.ub:
            raise ValueError("lb must be smaller than ub")
        return self


NonSmoothLawSpec = Union[ComplementarityLawSpec, NewtonImpactLawSpec, RelayLawSpec]


class FirstOrderLinearRelationSpec(ConfigBase):
    type: Literal["first_order_linear"]
    C: Matrix
    B: Matrix
    D: Optional[Matrix] = None
    e: Optional[Vector] = None

    @field_validator("C", "B", "D")
    @classmethod
    def _matrices(cls, value: Optional[Matrix]) -> Optional[Matrix]:
        return _check_matrix(value, "relation matrix")


class LagrangianLinearRelationSpec(ConfigBase):
    type: Literal["lagrangian_linear"]
    H: Matrix
    b: Optional[Vector] = None

    @field_validator("H")
    @classmethod
    def _h_matrix(cls, value: Matrix) -> Matrix:
        return _check_matrix(value, "H")


RelationSpec = Union[FirstOrderLinearRelationSpec, LagrangianLinearRelationSpec]


class InteractionSpec(ConfigBase):
    name: str
    ds: List[str]
    law: NonSmoothLawSpec
    relation: RelationSpec

    @field_validator("ds")
    @classmethod
    def _one_or_two(cls, value: List[str]) -> List[str]:
        if not 1 <= len(value) <= 2:
            raise ValueError("an interaction links one or two dynamical systems")
        return value


# ----------------------------------------------------------------------
# Integrators
# ----------------------------------------------------------------------
class EulerMoreauSpec(ConfigBase):
    type: Literal["euler_moreau"]
    theta: float = 0.5
    ds: Optional[List[str]] = None


class ZeroOrderHoldSpec(ConfigBase):
    type: Literal["zero_order_hold"]
    ds: Optional[List[str]] = None


class MoreauJeanSpec(ConfigBase):
    type: Literal["moreau_jean"]
    theta: float = 0.5
    gamma: float = 0.5
    ds: Optional[List[str]] = None


class MoreauJeanCombinedProjectionSpec(ConfigBase):
    type: Literal["moreau_jean_combined_projection"]
    theta: float = 0.5
    ds: Optional[List[str]] = None


IntegratorSpec = Union[EulerMoreauSpec, ZeroOrderHoldSpec, MoreauJeanSpec, MoreauJeanCombinedProjectionSpec]


# ----------------------------------------------------------------------
# Scenario
# ----------------------------------------------------------------------
class ScenarioConfig(ConfigBase):
    name: str = "scenario"
    description: Optional[str] = None
    time: TimeGrid
    simulation: SimulationSettings = Field(default_factory=SimulationSettings)
    dynamical_systems: List[DynamicalSystemSpec]
    interactions: List[InteractionSpec] = Field(default_factory=list)
    integrators: List[IntegratorSpec]

    @model_validator(mode="after")
    def _references(self) -> "ScenarioConfig":
        if not self.dynamical_systems:
            raise ValueError("at least one dynamical system is required")
        if not self.integrators:
            raise ValueError("at least one integrator is required")
        ds_names = [ds.name for ds in self.dynamical_systems]
        duplicates = sorted({n for n in ds_names if ds_names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate dynamical system names: {duplicates}")
        inter_names = [inter.name for inter in self.interactions]
        duplicates = sorted({n for n in inter_names if inter_names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate interaction names: {duplicates}")
        for inter in self.interactions:
            missing = [n for n in inter.ds if n not in ds_names]
            if missing:
                raise ValueError(f"interaction '{inter.name}' refers to unknown systems {missing}")

        if len(self.integrators) > 1 and any(osi.ds is None for osi in self.integrators):
            raise ValueError("with several integrators every one must list its 'ds'")
        assigned: List[str] = []
        for osi in self.integrators:
            names = ds_names if osi.ds is None else osi.ds
            missing = [n for n in names if n not in ds_names]
            if missing:
                raise ValueError(f"integrator '{osi.type}' refers to unknown systems {missing}")
            assigned.extend(names)
        twice = sorted({n for n in assigned if assigned.count(n) > 1})
        if twice:
            raise ValueError(f"systems assigned to more than one integrator: {twice}")
        unassigned = [n for n in ds_names if n not in assigned]
        if unassigned:
            raise ValueError(f"systems without integrator: {unassigned}")
        return self


def format_validation_error(exc: ValidationError, *, filename: str) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(item) for item in error.get("loc", []))
        msg = error.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}")
    details = "; ".join(parts) if parts else str(exc)
    return f"{filename}: invalid configuration: {details}"
