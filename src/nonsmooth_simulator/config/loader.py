from __future__ import annotations

import logging
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import ValidationError

from ..core.diagnostics import Diagnostics
from ..core.dynamical_systems import FirstOrderLinearDS, LagrangianLinearDS
from ..core.errors import ConfigurationError
from ..core.graph import Interaction, NonSmoothDynamicalSystem
from ..core.integrators import make_integrator
from ..core.laws import ComplementarityConditionNSL, NewtonImpactNSL, RelayNSL
from ..core.relations import FirstOrderLinearR, LagrangianLinearTIR
from ..core.time_discretisation import TimeDiscretisation
from ..core.time_stepping import TimeStepping
from .models import ScenarioConfig, format_validation_error

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    pass


def load_scenario_config(path: Path) -> Dict[str, Any]:
    path = Path(path)
    raw = _load_raw_config(path)
    return normalize_config_dict(raw, filename=path.name)


def _load_raw_config(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in {".yaml", ".yml", ".json"}:
        data = yaml.safe_load(text)
    else:
        raise ConfigError(f"Unsupported config extension '{path.suffix}'.")
    if not isinstance(data, dict):
        raise ConfigError(f"{path.name}: configuration must be a mapping")
    return data


def normalize_config_dict(config: Dict[str, Any], *, filename: str) -> Dict[str, Any]:
    """Validate a raw scenario mapping and return it with every default filled in."""
    raw = deepcopy(config)
    try:
        model = ScenarioConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(format_validation_error(exc, filename=filename)) from exc
    return model.model_dump()


def apply_overrides(
    config: Dict[str, Any],
    *,
    h: Optional[float] = None,
    T: Optional[float] = None,
    simulation: Optional[Dict[str, Any]] = None,
    filename: str = "<overrides>",
) -> Dict[str, Any]:
    data = deepcopy(config)
    if h is not None:
        data["time"]["h"] = float(h)
    if T is not None:
        data["time"]["T"] = float(T)
    if simulation:
        data["simulation"].update(simulation)
    return normalize_config_dict(data, filename=filename)


def _build_dynamical_system(spec: Dict[str, Any]):
    if spec["type"] == "first_order_linear":
        return FirstOrderLinearDS(spec["x0"], spec["A"], b=spec.get("b"), name=spec["name"])
    return LagrangianLinearDS(
        spec["q0"],
        spec["v0"],
        spec["mass"],
        K=spec.get("K"),
        C=spec.get("C"),
        fext=spec.get("fext"),
        name=spec["name"],
    )


def _build_law(spec: Dict[str, Any]):
    kind = spec["type"]
    if kind == "complementarity":
        return ComplementarityConditionNSL(spec["size"])
    if kind == "newton_impact":
        return NewtonImpactNSL(spec["e"], size=spec["size"])
    return RelayNSL(spec["size"], lb=spec["lb"], ub=spec["ub"])


def _build_relation(spec: Dict[str, Any]):
    if spec["type"] == "first_order_linear":
        return FirstOrderLinearR(C=spec["C"], B=spec["B"], D=spec.get("D"), e=spec.get("e"))
    return LagrangianLinearTIR(spec["H"], b=spec.get("b"))


def build_simulation(
    config: Union[Dict[str, Any], ScenarioConfig],
    *,
    diagnostics: Optional[Diagnostics] = None,
) -> TimeStepping:
    """Instantiate model, integrators and simulation from a validated scenario."""
    if isinstance(config, ScenarioConfig):
        config = config.model_dump()
    else:
        config = normalize_config_dict(config, filename=config.get("name", "scenario"))

    time = config["time"]
    try:
        nsds = NonSmoothDynamicalSystem(t0=time["t0"], T=time["T"])
        systems = {}
        for spec in config["dynamical_systems"]:
            ds = _build_dynamical_system(spec)
            nsds.insert_dynamical_system(ds)
            systems[ds.name] = ds
        for spec in config["interactions"]:
            inter = Interaction(_build_law(spec["law"]), _build_relation(spec["relation"]), name=spec["name"])
            nsds.link(inter, *[systems[name] for name in spec["ds"]])

        sim = TimeStepping(
            nsds,
            TimeDiscretisation(time["t0"], time["h"]),
            params=dict(config["simulation"]),
            diagnostics=diagnostics,
        )
        for spec in config["integrators"]:
            spec = dict(spec)
            kind = spec.pop("type")
            names = spec.pop("ds") or list(systems)
            osi = make_integrator(kind, **spec)
            for name in names:
                sim.associate(osi, systems[name])
    except ConfigurationError as exc:
        raise ConfigError(f"{config['name']}: {exc}") from exc

    logger.debug(
        "Built scenario '%s': %d systems, %d interactions, %d integrators",
        config["name"], nsds.number_of_ds, nsds.number_of_interactions, len(sim.integrators),
    )
    return sim
