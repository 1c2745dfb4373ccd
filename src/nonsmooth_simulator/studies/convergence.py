"""
Time-step convergence / numerical verification study.
"""
from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import numpy as np
import pandas as pd
import yaml

from . import save_study_metadata, with_time_step


SimFunc = Callable[[Dict[str, Any]], pd.DataFrame]


def _simulate(cfg: Dict[str, Any]) -> pd.DataFrame:
    from nonsmooth_simulator.config import build_simulation

    with build_simulation(cfg) as sim:
        return sim.run()


def _extract_metrics(df: pd.DataFrame, quantity: str) -> Dict[str, float]:
    if quantity not in df.columns:
        raise KeyError(f"Quantity '{quantity}' not in results (columns: {', '.join(df.columns)})")
    y = df[quantity].to_numpy(dtype=float)
    return {
        "final_value": float(y[-1]),
        "min_value": float(np.nanmin(y)),
        "max_value": float(np.nanmax(y)),
    }


def run_convergence_study(
    cfg: Dict[str, Any],
    dt_values: Iterable[float],
    *,
    quantity: str,
    out_dir: Optional[Path] = None,
    save_timeseries: bool = False,
    simulate_func: Optional[SimFunc] = None,
) -> pd.DataFrame:
    """
    Sweep the time step ``time.h`` of a scenario and report convergence metrics.

    Parameters
    ----------
    cfg:
        Scenario dict loaded from YAML.
    dt_values:
        Iterable of time steps.
    quantity:
        Column name in the simulation output DataFrame to analyze.
    out_dir:
        If provided, write summary CSV + metadata.
    save_timeseries:
        If True, also save each run DataFrame as CSV.
    simulate_func:
        For testing; defaults to building and running the scenario.

    Returns
    -------
    pd.DataFrame with one row per dt, coarsest first.
    """
    if simulate_func is None:
        simulate_func = _simulate

    dt_values = [float(dt) for dt in dt_values]
    rows: List[Dict[str, Any]] = []
    prev_final: Optional[float] = None

    for dt in sorted(dt_values, reverse=True):
        run_cfg = with_time_step(cfg, dt)

        t0 = time.perf_counter()
        df = simulate_func(run_cfg)
        wall = time.perf_counter() - t0

        metrics = _extract_metrics(df, quantity)
        final = metrics["final_value"]
        rel = None if prev_final is None or prev_final == 0 else 100.0 * abs(final - prev_final) / abs(prev_final)
        prev_final = final

        attrs = getattr(df, "attrs", {})
        rows.append(
            {
                "dt": dt,
                "n_steps": int(attrs.get("n_steps", max(len(df) - 1, 0))),
                "wall_time_s": float(wall),
                "newton_iterations": int(attrs.get("cumulative_newton_iterations", 0)),
                "converged_all_steps": bool(attrs.get("converged_all_steps", True)),
                "solver_failures": int(attrs.get("solver_failures", 0)),
                "relative_change_final_pct": rel,
                **metrics,
            }
        )

        if out_dir and save_timeseries:
            out_dir.mkdir(parents=True, exist_ok=True)
            df.to_csv(out_dir / f"timeseries_dt_{dt:.3e}.csv", index=False)

    summary = pd.DataFrame(rows)

    if out_dir:
        out_dir.mkdir(parents=True, exist_ok=True)
        summary.to_csv(out_dir / "convergence_summary.csv", index=False)
        (out_dir / "scenario.yml").write_text(
            yaml.safe_dump(cfg, sort_keys=False), encoding="utf-8"
        )
        save_study_metadata(
            out_dir,
            cfg,
            study_type="convergence",
            dt_values=dt_values,
            quantity=quantity,
            save_timeseries=bool(save_timeseries),
        )
    return summary
