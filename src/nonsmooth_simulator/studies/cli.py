"""
Typer CLI commands for studies.

Imported and registered from `nonsmooth_simulator.cli`.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

import typer

from ..config import ConfigError, load_scenario_config
from . import parse_floats_csv


def _parse_floats(s: str) -> List[float]:
    try:
        values = parse_floats_csv(s or "")
    except ValueError as e:
        raise typer.BadParameter(f"Could not parse floats from: {s!r}") from e
    if not values:
        raise typer.BadParameter("at least one value is required")
    return values


def _load_config(path: Path) -> Dict[str, Any]:
    try:
        return load_scenario_config(path)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc


def register_study_commands(app: typer.Typer) -> None:
    @app.command("convergence")
    def convergence_cmd(
        config: Path = typer.Option(..., "--config", "-c", exists=True, readable=True, help="Scenario YAML"),
        dts: str = typer.Option("1e-2,5e-3,2.5e-3", "--dts", help="Comma/space-separated time steps"),
        quantity: str = typer.Option(..., "--quantity", "-q", help="Output column to analyze, e.g. ball.q0"),
        out: Path = typer.Option(..., "--out", "-o", help="Output directory"),
        save_timeseries: bool = typer.Option(False, "--save-timeseries", help="Save timeseries CSVs for each run"),
    ) -> None:
        """Run time-step convergence study."""
        from .convergence import run_convergence_study

        cfg = _load_config(config)
        dt_list = _parse_floats(dts)
        summary = run_convergence_study(
            cfg, dt_list, quantity=quantity, out_dir=out, save_timeseries=save_timeseries
        )
        typer.echo(summary.to_string(index=False))
        typer.echo(f"Saved to: {out}")
