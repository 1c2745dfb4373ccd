from __future__ import annotations

from pathlib import Path
import sys

sys.path.insert(0, "src")

import pandas as pd
import yaml
from typer.testing import CliRunner

from nonsmooth_simulator.cli import app

runner = CliRunner()


def _short_ball_config(tmp_path: Path) -> Path:
    cfg = yaml.safe_load(Path("configs/bouncing_ball.yml").read_text(encoding="utf-8"))
    cfg["time"]["T"] = 0.2
    path = tmp_path / "ball.yml"
    path.write_text(yaml.safe_dump(cfg), encoding="utf-8")
    return path


def test_run_writes_results(tmp_path: Path) -> None:
    out = tmp_path / "out"
    result = runner.invoke(
        app,
        ["run", "--config", str(_short_ball_config(tmp_path)), "--output-dir", str(out), "-p", "ball"],
    )
    assert result.exit_code == 0, result.output
    assert "Run summary" in result.output

    df = pd.read_csv(out / "ball_results.csv")
    assert df["time"].iloc[-1] == 0.2
    assert {"ball.q0", "ball.v0", "floor.y0", "floor.y1", "floor.lambda1"} <= set(df.columns)
    log_text = (out / "ball_run.log").read_text(encoding="utf-8")
    assert "[INFO] Running scenario" in log_text
    assert "Run completed." in log_text


def test_run_overrides(tmp_path: Path) -> None:
    out = tmp_path / "out"
    result = runner.invoke(
        app,
        [
            "run",
            "-c",
            "configs/relay_smc.yml",
            "-o",
            str(out),
            "--h",
            "0.02",
            "--t-end",
            "0.1",
            "--newton",
            "nonlinear",
        ],
    )
    assert result.exit_code == 0, result.output
    df = pd.read_csv(out / "results.csv")
    assert len(df) == 6


def test_run_rejects_invalid_override(tmp_path: Path) -> None:
    result = runner.invoke(
        app,
        ["run", "-c", str(_short_ball_config(tmp_path)), "-o", str(tmp_path), "--newton", "secant"],
    )
    assert result.exit_code != 0
    assert not (tmp_path / "results.csv").exists()


def test_convergence_command(tmp_path: Path) -> None:
    out = tmp_path / "study"
    result = runner.invoke(
        app,
        [
            "convergence",
            "-c",
            str(_short_ball_config(tmp_path)),
            "--dts",
            "0.01,0.005",
            "-q",
            "ball.q0",
            "-o",
            str(out),
        ],
    )
    assert result.exit_code == 0, result.output
    summary = pd.read_csv(out / "convergence_summary.csv")
    assert list(summary["dt"]) == [0.01, 0.005]
    assert (out / "run_metadata.json").is_file()


def test_convergence_rejects_invalid_scenario(tmp_path: Path) -> None:
    cfg = yaml.safe_load(Path("configs/bouncing_ball.yml").read_text(encoding="utf-8"))
    cfg["gravity"] = 9.81
    path = tmp_path / "bad.yml"
    path.write_text(yaml.safe_dump(cfg), encoding="utf-8")

    result = runner.invoke(
        app,
        ["convergence", "-c", str(path), "--dts", "0.01", "-q", "ball.q0", "-o", str(tmp_path / "study")],
    )
    assert result.exit_code == 2
    assert not (tmp_path / "study").exists()
