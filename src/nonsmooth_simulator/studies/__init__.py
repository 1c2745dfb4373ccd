"""
Studies on top of scenario configs.

A study runs `nonsmooth_simulator.config.build_simulation` on plain scenario
dicts, so it never depends on integrator internals.
"""
from __future__ import annotations

import copy
import json
import re
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional


def with_time_step(cfg: Dict[str, Any], h: float) -> Dict[str, Any]:
    """Deep copy of a scenario dict with ``time.h`` replaced."""
    new_cfg = copy.deepcopy(cfg)
    if not isinstance(new_cfg.get("time"), dict):
        new_cfg["time"] = {}
    new_cfg["time"]["h"] = float(h)
    return new_cfg


def _git_revision() -> Optional[str]:
    try:
        proc = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],
            capture_output=True,
            text=True,
            check=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    return proc.stdout.strip() or None


def save_study_metadata(output_dir: Path, cfg: Dict[str, Any], *, study_type: str, **extra: Any) -> Path:
    """
    Write ``run_metadata.json`` next to the study outputs.

    Records the scenario name, its time grid, Newton/solver settings and
    integrator types, so a study directory can be traced back to the model
    without re-reading ``scenario.yml``.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    payload = {
        "study_type": study_type,
        "scenario": cfg.get("name"),
        "time": cfg.get("time"),
        "simulation": cfg.get("simulation"),
        "integrators": [spec.get("type") for spec in cfg.get("integrators") or []],
        "git_revision": _git_revision(),
        **extra,
    }
    path = output_dir / "run_metadata.json"
    path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
    return path


def parse_floats_csv(s: str) -> List[float]:
    """Parse '1e-2,5e-3' or '1e-2 5e-3' into floats."""
    return [float(p) for p in re.split(r"[,\s]+", s.strip()) if p]
