from __future__ import annotations

import logging
from pathlib import Path
import sys

sys.path.insert(0, "src")

from nonsmooth_simulator.core.diagnostics import Diagnostics
from nonsmooth_simulator.core.errors import (
    ConfigurationError,
    NonConvergenceError,
    NonsmoothSimulatorError,
    NotImplementedAtThisLevel,
)


def test_record_counts_known_kinds() -> None:
    diag = Diagnostics()
    diag.record("newton_non_convergence", step_idx=3, t=0.3)
    diag.record("solver_failures", info=1)
    diag.record("solver_failures", info=2)
    diag.record("projection_failure", t=0.5)

    assert diag.summary() == {"newton_non_convergence": 1, "solver_failures": 2}
    assert diag.count("projection_failure") == 0
    assert [ev.data["info"] for ev in diag.events_of("solver_failures")] == [1, 2]

    diag.reset()
    assert diag.count("solver_failures") == 0
    assert len(diag.events) == 0


def test_level_filters_messages(caplog) -> None:
    logger = logging.getLogger("nonsmooth_simulator.test_diag")
    diag = Diagnostics(logger=logger, level=logging.WARNING)
    with caplog.at_level(logging.DEBUG, logger=logger.name):
        diag.info("hidden %d", 1)
        diag.warning("shown %d", 2)
    assert "hidden 1" not in caplog.text
    assert "shown 2" in caplog.text


def test_to_file_writes_log(tmp_path: Path) -> None:
    logger = logging.getLogger("nonsmooth_simulator.test_file")
    diag = Diagnostics(logger=logger)
    handler = diag.to_file(tmp_path / "logs" / "run.log")
    try:
        diag.info("step %d done", 7)
    finally:
        logger.removeHandler(handler)
        handler.close()
    text = (tmp_path / "logs" / "run.log").read_text(encoding="utf-8")
    assert "[INFO] step 7 done" in text


def test_event_record_is_capped() -> None:
    diag = Diagnostics(max_events=3)
    for step in range(5):
        diag.record("newton_non_convergence", step_idx=step)
    assert diag.count("newton_non_convergence") == 5
    assert [ev.data["step_idx"] for ev in diag.events_of("newton_non_convergence")] == [2, 3, 4]


def test_error_taxonomy() -> None:
    assert issubclass(ConfigurationError, ValueError)
    assert issubclass(NotImplementedAtThisLevel, NotImplementedError)
    for cls in (ConfigurationError, NotImplementedAtThisLevel, NonConvergenceError):
        assert issubclass(cls, NonsmoothSimulatorError)

    exc = NonConvergenceError(
        "no luck", step_idx=2, t=0.3, iter_count=5, failure_stage="newton", state_snapshot={"x": 1.0}
    )
    diag = exc.to_diagnostics_dict()
    assert diag["error_type"] == "NonConvergenceError"
    assert diag["t_last"] == 0.3
    assert diag["x"] == 1.0
