# src/nonsmooth_simulator/cli.py

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional

import pandas as pd
import typer

from .config import ConfigError, apply_overrides, build_simulation, load_scenario_config
from .core.diagnostics import Diagnostics
from .core.errors import NonsmoothSimulatorError

app = typer.Typer(
    add_completion=False,
    help=(
        "Nonsmooth simulator CLI\n\n"
        "Event-capturing time-stepping of systems with contacts, impacts and relays.\n"
        "Use 'run' for a single scenario or 'convergence' for a time-step sweep."
    ),
)

# Studies commands (time-step convergence)
from .studies.cli import register_study_commands
register_study_commands(app)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def _ensure_output_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def _setup_logger(output_dir: Path, log_stem: str) -> Diagnostics:
    """
    Set up a per-run diagnostics sink writing to <output_dir>/<log_stem>.log.
    """
    _ensure_output_dir(output_dir)
    logger = logging.getLogger(f"nonsmooth_simulator.cli.{log_stem}")
    logger.setLevel(logging.INFO)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    diagnostics = Diagnostics(logger=logger, level=logging.INFO)
    diagnostics.to_file(output_dir / f"{log_stem}.log")
    return diagnostics


def _print_and_log(diagnostics: Diagnostics, msg: str) -> None:
    typer.echo(msg)
    diagnostics.info("%s", msg)


def _print_summary(results_df: pd.DataFrame, wall_time: float, diagnostics: Diagnostics) -> None:
    attrs = results_df.attrs
    lines = [
        "",
        "Run summary",
        "-----------",
        f"steps                      : {attrs.get('n_steps', len(results_df) - 1)}",
        f"final time                 : {results_df['time'].iloc[-1]:.6g}",
        f"Newton iterations (total)  : {attrs.get('cumulative_newton_iterations', 0)}",
        f"max iterations in a step   : {attrs.get('max_iters_step', 0)}",
        f"all steps converged        : {attrs.get('converged_all_steps', True)}",
        f"Newton non-convergences    : {attrs.get('newton_non_convergence', 0)}",
        f"nonsmooth solver failures  : {attrs.get('solver_failures', 0)}",
        f"wall time [s]              : {wall_time:.3f}",
    ]
    for line in lines:
        _print_and_log(diagnostics, line)


@app.command()
def run(
    config: Path = typer.Option(
        ...,
        "--config",
        "-c",
        exists=True,
        readable=True,
        help="YAML/JSON scenario file (systems, interactions, integrators).",
    ),
    output_dir: Path = typer.Option(
        Path("results"),
        "--output-dir",
        "-o",
        help="Directory for result files.",
    ),
    prefix: str = typer.Option(
        "",
        "--prefix",
        "-p",
        help="Optional filename prefix for output files.",
    ),
    h: Optional[float] = typer.Option(
        None,
        "--h",
        help="Time step; overrides time.h from the config.",
    ),
    t_end: Optional[float] = typer.Option(
        None,
        "--t-end",
        help="Final time; overrides time.T from the config.",
    ),
    newton_options: Optional[str] = typer.Option(
        None,
        "--newton",
        help="Newton mode: linear, linear_implicit or nonlinear.",
    ),
    workers: Optional[int] = typer.Option(
        None,
        "--workers",
        help="Threads used for the per-system phases of each Newton iteration.",
    ),
) -> None:
    """
    Run a single scenario.

    Examples
    --------
        nonsmooth-sim run --config configs/bouncing_ball.yml --output-dir results/ball

        nonsmooth-sim run -c configs/relay_smc.yml --h 1e-3 --t-end 5
    """
    _ensure_output_dir(output_dir)

    filename_prefix = f"{prefix}_" if prefix else ""
    log_stem = f"{filename_prefix}run"
    diagnostics = _setup_logger(output_dir, log_stem)

    _print_and_log(diagnostics, f"Loading config: {config}")
    simulation = {}
    if newton_options is not None:
        simulation["newton_options"] = newton_options
    if workers is not None:
        simulation["n_workers"] = workers
    try:
        scenario = load_scenario_config(config)
        scenario = apply_overrides(scenario, h=h, T=t_end, simulation=simulation, filename=config.name)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc

    _print_and_log(diagnostics, f"Running scenario '{scenario['name']}' ...")
    t0 = time.perf_counter()
    try:
        with build_simulation(scenario, diagnostics=diagnostics) as sim:
            results_df = sim.run()
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc
    except NonsmoothSimulatorError as exc:
        diagnostics.error("Simulation aborted: %s", exc)
        typer.echo(f"Simulation aborted: {exc}", err=True)
        raise typer.Exit(code=1)
    wall_time = time.perf_counter() - t0

    csv_path = output_dir / f"{filename_prefix}results.csv"
    _print_and_log(diagnostics, f"Writing time history to {csv_path}")
    results_df.to_csv(csv_path, index=False)

    _print_summary(results_df, wall_time, diagnostics)

    log_file = output_dir / f"{log_stem}.log"
    typer.echo(f"\nDetailed log written to {log_file}")
    diagnostics.info("Run completed.")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
