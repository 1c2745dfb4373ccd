from __future__ import annotations

from pathlib import Path
import sys

sys.path.insert(0, "src")

import numpy as np
import pytest
import yaml

from nonsmooth_simulator.config.loader import (
    ConfigError,
    apply_overrides,
    build_simulation,
    load_scenario_config,
    normalize_config_dict,
)
from nonsmooth_simulator.core.integrators import ZeroOrderHoldOSI
from nonsmooth_simulator.core.scenarios import bouncing_ball


def _ball_config() -> dict:
    return {
        "name": "ball",
        "time": {"h": 0.005, "T": 0.5},
        "dynamical_systems": [
            {
                "name": "ball",
                "type": "lagrangian_linear",
                "q0": [1.0],
                "v0": [0.0],
                "mass": 1.0,
                "fext": [-9.81],
            }
        ],
        "interactions": [
            {
                "name": "floor",
                "ds": ["ball"],
                "law": {"type": "newton_impact", "e": 0.9},
                "relation": {"type": "lagrangian_linear", "H": [[1.0]]},
            }
        ],
        "integrators": [{"type": "moreau_jean"}],
    }


def test_defaults_are_filled_in() -> None:
    cfg = normalize_config_dict(_ball_config(), filename="ball.yml")
    assert cfg["time"]["t0"] == 0.0
    assert cfg["simulation"]["newton_options"] == "nonlinear"
    assert cfg["simulation"]["nonsmooth_tolerance"] == 1e-8
    assert cfg["integrators"][0]["gamma"] == 0.5


@pytest.mark.parametrize(
    "path, value, fragment",
    [
        (("time", "h"), -1.0, "h must be > 0"),
        (("simulation",), {"newton_options": "secant"}, "newton_options"),
        (("simulation",), {"newton_tol": 1e-3}, "newton_tol"),
        (("interactions", 0, "ds"), ["rock"], "unknown systems"),
        (("interactions", 0, "law", "e"), 1.5, "e must lie in [0, 1]"),
        (("integrators",), [{"type": "moreau_jean", "ds": ["ghost"]}], "unknown systems"),
    ],
)
def test_invalid_config_raises(path, value, fragment) -> None:
    cfg = _ball_config()
    target = cfg
    for key in path[:-1]:
        target = target.setdefault(key, {}) if isinstance(key, str) else target[key]
    target[path[-1]] = value
    try:
        normalize_config_dict(cfg, filename="bad.yml")
    except ConfigError as exc:
        assert "bad.yml" in str(exc)
        assert fragment in str(exc)
    else:
        raise AssertionError("Expected ConfigError")


def test_several_integrators_must_list_their_systems() -> None:
    cfg = _ball_config()
    cfg["integrators"] = [{"type": "moreau_jean"}, {"type": "moreau_jean_combined_projection"}]
    with pytest.raises(ConfigError, match="must list its 'ds'"):
        normalize_config_dict(cfg, filename="bad.yml")


def test_engine_level_errors_become_config_errors() -> None:
    cfg = _ball_config()
    cfg["integrators"] = [{"type": "zero_order_hold"}]
    sim = build_simulation(cfg)
    assert isinstance(sim.integrators[0], ZeroOrderHoldOSI)
    with pytest.raises(ValueError):
        sim.initialize()

    cfg = _ball_config()
    cfg["interactions"][0]["relation"]["H"] = [[1.0, 0.0]]
    with pytest.raises(ConfigError, match="H must have shape"):
        build_simulation(cfg)


def test_overrides_are_validated() -> None:
    cfg = normalize_config_dict(_ball_config(), filename="ball.yml")
    updated = apply_overrides(cfg, h=0.01, T=0.2, simulation={"newton_options": "linear"})
    assert updated["time"]["h"] == 0.01
    assert updated["time"]["T"] == 0.2
    assert updated["simulation"]["newton_options"] == "linear"
    assert cfg["time"]["h"] == 0.005
    with pytest.raises(ConfigError):
        apply_overrides(cfg, h=-1.0)


def test_config_matches_scenario_helper(tmp_path: Path) -> None:
    cfg_path = tmp_path / "ball.yml"
    cfg_path.write_text(yaml.safe_dump(_ball_config()), encoding="utf-8")

    with build_simulation(load_scenario_config(cfg_path)) as sim:
        from_config = sim.run()
    with bouncing_ball(height=1.0, e=0.9, h=0.005, T=0.5) as sim:
        from_helper = sim.run()

    np.testing.assert_allclose(from_config["ball.q0"], from_helper["ball.q0"], rtol=0, atol=1e-14)
    np.testing.assert_allclose(from_config["floor.lambda1"], from_helper["floor.lambda1"], atol=1e-14)


def test_missing_or_unsupported_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_scenario_config(tmp_path / "nope.yml")
    bad = tmp_path / "case.toml"
    bad.write_text("x = 1", encoding="utf-8")
    with pytest.raises(ConfigError, match="Unsupported"):
        load_scenario_config(bad)


@pytest.mark.parametrize("name", ["bouncing_ball.yml", "relay_smc.yml", "ball_chain.yml"])
def test_shipped_configs_build(name: str) -> None:
    cfg = load_scenario_config(Path("configs") / name)
    cfg = apply_overrides(cfg, T=0.1)
    with build_simulation(cfg) as sim:
        df = sim.run()
    assert df["time"].iloc[-1] == pytest.approx(0.1)
    assert df.attrs["solver_failures"] == 0


def test_relay_config_reaches_sliding_surface() -> None:
    cfg = load_scenario_config(Path("configs/relay_smc.yml"))
    with build_simulation(cfg) as sim:
        df = sim.run()
    y = df["relay.y0"].to_numpy()
    assert y[0] == pytest.approx(1.0)
    assert abs(y[-1]) < 1e-6
    assert df["plant.x0"].abs().iloc[-1] < 0.1
