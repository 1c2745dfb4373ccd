from __future__ import annotations

import logging
import sys

sys.path.insert(0, "src")

import numpy as np
import pandas as pd
import pytest

from nonsmooth_simulator.core.diagnostics import Diagnostics
from nonsmooth_simulator.core.dynamical_systems import FirstOrderLinearDS, FirstOrderNonLinearDS
from nonsmooth_simulator.core.errors import (
    ConfigurationError,
    NonConvergenceError,
    SolverFailureError,
)
from nonsmooth_simulator.core.graph import NonSmoothDynamicalSystem
from nonsmooth_simulator.core.integrators import EulerMoreauOSI
from nonsmooth_simulator.core.scenarios import ball_on_ball_chain, bouncing_ball, relay_feedback
from nonsmooth_simulator.core.solvers import SolverResult
from nonsmooth_simulator.core.time_discretisation import TimeDiscretisation
from nonsmooth_simulator.core.time_stepping import (
    NewtonStatus,
    TimeStepping,
    get_default_time_stepping_params,
)


def _first_order_sim(ds, *, h=0.1, T=0.1, params=None, diagnostics=None) -> TimeStepping:
    nsds = NonSmoothDynamicalSystem(t0=0.0, T=T)
    nsds.insert_dynamical_system(ds)
    sim = TimeStepping(nsds, TimeDiscretisation(0.0, h), params=params, diagnostics=diagnostics)
    sim.associate(EulerMoreauOSI(theta=0.5), ds)
    return sim


def _stiff_ds_with_wrong_jacobian() -> FirstOrderNonLinearDS:
    # the zero Jacobian turns the Newton loop into a diverging fixed-point iteration
    return FirstOrderNonLinearDS(
        [1.0],
        lambda t, x: -50.0 * x,
        jacobian_fx=lambda t, x: [[0.0]],
        name="stiff",
    )


def test_default_params_roundtrip() -> None:
    params = get_default_time_stepping_params()
    assert params["newton_tolerance"] == 1e-6
    assert params["newton_max_iteration"] == 50
    assert params["newton_options"] == "nonlinear"
    assert params["n_workers"] == 1
    sim = _first_order_sim(FirstOrderLinearDS([1.0], [[-1.0]]), params=params)
    assert sim.params.newton_max_iteration == 50


def test_unknown_or_invalid_settings_are_rejected() -> None:
    with pytest.raises(ConfigurationError):
        _first_order_sim(FirstOrderLinearDS([1.0], [[-1.0]]), params={"newton_tol": 1e-3})
    with pytest.raises(ConfigurationError):
        _first_order_sim(FirstOrderLinearDS([1.0], [[-1.0]]), params={"newton_options": "secant"})
    with pytest.raises(ConfigurationError):
        _first_order_sim(FirstOrderLinearDS([1.0], [[-1.0]]), params={"newton_max_iteration": 0})
    with pytest.raises(ConfigurationError):
        TimeDiscretisation(0.0, 0.0)


def test_time_grid_clips_last_step() -> None:
    with _first_order_sim(FirstOrderLinearDS([1.0], [[-1.0]]), h=0.1, T=0.25) as sim:
        df = sim.run()
    np.testing.assert_allclose(df["time"].to_numpy(), [0.0, 0.1, 0.2, 0.25])
    assert df.attrs["n_steps"] == 3
    with pytest.raises(RuntimeError):
        sim.compute_one_step()


@pytest.mark.parametrize("mode", ["linear", "linear_implicit"])
def test_linear_modes_take_exactly_one_iteration(mode: str) -> None:
    sim = _first_order_sim(
        _stiff_ds_with_wrong_jacobian(),
        params={"newton_options": mode, "newton_tolerance": 1e-14},
    )
    status = sim.compute_one_step()
    assert status is NewtonStatus.CONVERGED
    assert sim.newton.iterations == 1
    assert sim.diagnostics.count("newton_non_convergence") == 0


def test_linear_problem_converges_in_one_nonlinear_iteration() -> None:
    sim = _first_order_sim(FirstOrderLinearDS([1.0], [[-1.0]]))
    status = sim.compute_one_step()
    assert status is NewtonStatus.CONVERGED
    assert sim.newton.iterations == 1

    history = sim.newton.history
    assert [it for it, *_ in history] == [0, 1]
    assert history[0][1] == pytest.approx(0.1)
    assert history[1][1] < 1e-12
    residuals = [r for _, r, _, _ in history]
    assert all(b <= a for a, b in zip(residuals, residuals[1:]))


def test_nonconvergence_warns_and_continues(caplog) -> None:
    diagnostics = Diagnostics()
    sim = _first_order_sim(
        _stiff_ds_with_wrong_jacobian(),
        params={"newton_max_iteration": 5},
        diagnostics=diagnostics,
    )
    with caplog.at_level(logging.WARNING, logger="nonsmooth_simulator"):
        df = sim.run()

    assert sim.newton.status is NewtonStatus.MAX_ITERATION_REACHED
    assert sim.newton.iterations == 5
    assert len(sim.newton.history) == 6
    assert diagnostics.count("newton_non_convergence") == 1
    assert df.attrs["converged_all_steps"] is False
    assert df.attrs["newton_non_convergence"] == 1
    assert df.attrs["non_converged_steps"] == [0]
    assert df["newton_status"].iloc[-1] == "max_iteration_reached"
    assert "did not converge" in caplog.text


def test_nonconvergence_raises_when_fatal() -> None:
    sim = _first_order_sim(
        _stiff_ds_with_wrong_jacobian(),
        params={"newton_max_iteration": 5, "newton_warning_on_nonconvergence": False},
    )
    with pytest.raises(NonConvergenceError) as excinfo:
        sim.run()

    diag = excinfo.value.to_diagnostics_dict()
    assert diag["failure_stage"] == "newton"
    assert diag["iter_count"] == 5
    assert diag["step_idx"] == 0
    assert diag["solver_type"] == "nonlinear"
    assert diag["dt_effective"] == pytest.approx(0.1)
    assert sim.diagnostics.count("newton_non_convergence") == 1


def test_reset_lambdas_zeroes_every_level() -> None:
    sim = bouncing_ball(T=0.1)
    floor = sim.nsds.interaction_by_name("floor")
    ball = sim.nsds.dynamical_system_by_name("ball")
    for level in range(3):
        floor.lambda_[level][:] = 1.0
        ball.p[level][:] = 1.0

    sim.reset_lambdas()
    for level in range(3):
        assert not np.any(floor.lambda_[level])
        assert not np.any(ball.p[level])


def test_update_state_without_input_returns_free_state() -> None:
    for sim in (relay_feedback(T=0.1), bouncing_ball(T=0.1)):
        sim.initialize()
        sim.initialize_newton_loop()
        sim.compute_free_state()
        sim.update_state()
        ds = sim.nsds.dynamical_system(0)
        if hasattr(ds, "v_free"):
            np.testing.assert_array_equal(ds.v, ds.v_free)
        else:
            np.testing.assert_array_equal(ds.x, ds.x_free)


def test_free_flight_has_no_active_contact() -> None:
    with bouncing_ball(height=1.0, h=5e-3, T=0.3) as sim:
        df = sim.run()
    assert not df["floor.active"].any()
    assert (df["floor.lambda1"] == 0.0).all()
    assert (df["n_active"] == 0).all()
    assert df["ball.q0"].iloc[-1] < 1.0


def test_contact_activation_and_admissibility() -> None:
    h = 5e-3
    tol = 1e-8
    sim = bouncing_ball(height=1.0, e=0.9, h=h, T=0.8)
    floor = sim.nsds.interaction_by_name("floor")
    with sim:
        sim.initialize()
        while sim.events.has_next_event():
            was_active = floor.number in sim.topology.index_set(1)
            sim.advance_to_event()
            assert np.all(floor.lambda_[1] >= -tol)
            if not was_active:
                assert not np.any(floor.lambda_[1])
            elif floor.number in sim.topology.index_set(1):
                assert floor.is_admissible(1, 1e-6)
            sim._record(sim.next_time, sim.newton.status)
            sim.next_step()
    df = sim.results()

    active = df["floor.active"].to_numpy()
    assert active.any()
    first = int(np.argmax(active))
    predicted = df["floor.y0"] + 0.5 * h * df["floor.y1"]
    assert predicted.iloc[first] <= tol
    assert (predicted.iloc[:first] > tol).all()
    # the impulse is applied on the step after the contact enters IndexSet_1
    assert df["floor.lambda1"].iloc[first] == 0.0
    assert df["floor.lambda1"].iloc[first + 1] > 0.0
    assert df["floor.y1"].max() > 0.0
    assert df["ball.q0"].min() > -0.05


def test_solver_failure_raises_by_default(monkeypatch) -> None:
    sim = relay_feedback(T=0.05)

    def failing_solver(data):
        return SolverResult(np.zeros(data.size), data.q.copy(), 1)

    monkeypatch.setattr(sim.problem, "solver", failing_solver)
    with pytest.raises(SolverFailureError) as excinfo:
        sim.run()
    assert excinfo.value.info == 1
    assert excinfo.value.problem_size == 1
    assert sim.diagnostics.count("solver_failures") == 1


def test_solver_failure_warns_when_tolerated(monkeypatch, caplog) -> None:
    sim = relay_feedback(T=0.05, params={"warning_nonsmooth_solver": True})

    def failing_solver(data):
        return SolverResult(np.zeros(data.size), data.q.copy(), 1)

    monkeypatch.setattr(sim.problem, "solver", failing_solver)
    with caplog.at_level(logging.WARNING, logger="nonsmooth_simulator"):
        df = sim.run()
    assert df.attrs["solver_failures"] == 5
    assert (df["solver_info"].iloc[1:] == 1).all()
    assert "Nonsmooth solver failed" in caplog.text


def test_thread_pool_matches_serial_run() -> None:
    with ball_on_ball_chain(T=0.4) as sim:
        serial = sim.run()
    with ball_on_ball_chain(T=0.4, params={"n_workers": 2}) as sim:
        parallel = sim.run()
        assert sim._executor is not None
    assert sim._executor is None
    pd.testing.assert_frame_equal(serial, parallel)


def test_nonlinear_newton_residuals_decrease() -> None:
    ds = FirstOrderNonLinearDS(
        [1.0],
        lambda t, x: -x ** 3,
        jacobian_fx=lambda t, x: [[-3.0 * x[0] ** 2]],
        name="cubic",
    )
    sim = _first_order_sim(ds, params={"newton_tolerance": 1e-12})
    status = sim.compute_one_step()
    assert status is NewtonStatus.CONVERGED
    assert sim.newton.iterations >= 3

    residuals = [r for _, r, _, _ in sim.newton.history]
    assert residuals[0] == pytest.approx(0.1)
    assert all(b <= a for a, b in zip(residuals, residuals[1:]))
    assert residuals[-1] <= 1e-12


# ----------------------------------------------------------------------
# Multiplier and last-iteration settings, on one relay step:
# free output 0.05, W = 0.1, so lambda = -0.5 and the corrected state is 0.
# ----------------------------------------------------------------------
def _relay_step(**params):
    sim = relay_feedback(x0=(0.05,), h=0.1, T=0.2, params=params or None)
    plant = sim.nsds.dynamical_system_by_name("plant")
    relay = sim.nsds.interaction_by_name("relay")
    return sim, plant, relay


def _advance(sim: TimeStepping) -> NewtonStatus:
    sim.initialize()
    return sim.advance_to_event()


def test_skip_last_update_input_in_linear_mode() -> None:
    sim, plant, relay = _relay_step(newton_options="linear")
    _advance(sim)
    assert plant.r[0] == pytest.approx(-0.5)
    assert plant.x[0] == pytest.approx(0.0, abs=1e-12)

    sim, plant, relay = _relay_step(newton_options="linear", skip_last_update_input=True)
    assert _advance(sim) is NewtonStatus.CONVERGED
    assert relay.lambda_[0][0] == pytest.approx(-0.5)
    assert not np.any(plant.r)
    assert plant.x[0] == pytest.approx(0.05)


def test_skip_last_update_output_in_linear_mode() -> None:
    sim, plant, relay = _relay_step(newton_options="linear")
    _advance(sim)
    assert relay.y[0][0] == pytest.approx(0.0, abs=1e-12)

    sim, plant, relay = _relay_step(newton_options="linear", skip_last_update_output=True)
    _advance(sim)
    assert plant.x[0] == pytest.approx(0.0, abs=1e-12)
    assert relay.y[0][0] == pytest.approx(0.05)

    # a tracked output residual needs the output, so it is never skipped
    sim, plant, relay = _relay_step(
        newton_options="linear", skip_last_update_output=True, compute_residu_y=True
    )
    _advance(sim)
    assert relay.y[0][0] == pytest.approx(0.0, abs=1e-12)


@pytest.mark.parametrize(
    "params, kept",
    [
        ({}, False),
        ({"reset_all_lambda": False}, True),
        ({"skip_reset_lambdas": True}, True),
    ],
)
def test_step_acceptance_resets_multipliers(params, kept: bool) -> None:
    sim, plant, relay = _relay_step(**params)
    sim.compute_one_step()
    if kept:
        assert relay.lambda_[0][0] == pytest.approx(-0.5)
        assert plant.r[0] == pytest.approx(-0.5)
    else:
        assert not np.any(relay.lambda_[0])
        assert not np.any(plant.r)


@pytest.mark.parametrize("flag, column, first", [("compute_residu_y", 2, 0.05), ("compute_residu_r", 3, 0.5)])
def test_output_and_input_residuals_gate_convergence(flag: str, column: int, first: float) -> None:
    sim, _, _ = _relay_step()
    _advance(sim)
    assert sim.newton.iterations == 1

    sim, _, _ = _relay_step(**{flag: True})
    assert _advance(sim) is NewtonStatus.CONVERGED
    assert sim.newton.iterations == 2
    history = sim.newton.history
    assert history[1][column] == pytest.approx(first)
    assert history[2][column] == pytest.approx(0.0, abs=1e-12)
