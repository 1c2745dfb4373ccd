from __future__ import annotations

import sys

sys.path.insert(0, "src")

import pandas as pd
import pytest

from nonsmooth_simulator.core.dynamical_systems import LagrangianLinearDS
from nonsmooth_simulator.core.errors import ConfigurationError
from nonsmooth_simulator.core.graph import Interaction, NonSmoothDynamicalSystem
from nonsmooth_simulator.core.index_sets import Topology
from nonsmooth_simulator.core.laws import NewtonImpactNSL
from nonsmooth_simulator.core.relations import LagrangianLinearTIR
from nonsmooth_simulator.core.scenarios import ball_on_ball_chain, bouncing_ball


def _two_contact_model() -> NonSmoothDynamicalSystem:
    nsds = NonSmoothDynamicalSystem(t0=0.0, T=1.0)
    for j in range(2):
        ball = LagrangianLinearDS([1.0 + j], [0.0], 1.0, name=f"b{j}")
        nsds.insert_dynamical_system(ball)
        nsds.link(Interaction(NewtonImpactNSL(0.5), LagrangianLinearTIR([[1.0]])), ball)
    return nsds


def test_level0_holds_every_interaction() -> None:
    topo = Topology(_two_contact_model(), number_of_index_sets=3)
    assert topo.index_set(0).as_list() == [0, 1]
    assert len(topo.index_set(1)) == 0
    assert len(topo.index_set(2)) == 0


def test_removal_cascades_to_finer_levels() -> None:
    topo = Topology(_two_contact_model(), number_of_index_sets=3)
    topo.apply(1, [0, 1], [])
    topo.apply(2, [0], [])
    assert topo.snapshot() == [[0, 1], [0, 1], [0]]

    topo.apply(1, [], [0])
    assert topo.snapshot() == [[0, 1], [1], []]
    assert topo.check_nested()


def test_add_requires_membership_of_coarser_level() -> None:
    topo = Topology(_two_contact_model(), number_of_index_sets=3)
    topo.apply(2, [1], [])
    assert 1 not in topo.index_set(2)
    assert topo.check_nested()


def test_level0_cannot_be_updated() -> None:
    topo = Topology(_two_contact_model(), number_of_index_sets=2)
    with pytest.raises(ConfigurationError):
        topo.apply(0, [0], [])
    with pytest.raises(ConfigurationError):
        topo.apply(2, [0], [])


def test_index_sets_stay_nested_with_projection() -> None:
    sim = bouncing_ball(h=1e-2, T=1.5, integrator="moreau_jean_combined_projection")
    with sim:
        sim.initialize()
        assert sim.topology.number_of_index_sets == 3
        levels_seen = set()
        while sim.events.has_next_event():
            sim.compute_one_step()
            assert sim.topology.check_nested()
            for level, members in enumerate(sim.topology.snapshot()):
                if members:
                    levels_seen.add(level)
    assert {0, 1, 2} <= levels_seen


def test_identical_runs_give_identical_results() -> None:
    with ball_on_ball_chain(T=0.5) as sim:
        first = sim.run()
    with ball_on_ball_chain(T=0.5) as sim:
        second = sim.run()
    pd.testing.assert_frame_equal(first, second)
    assert first.attrs == second.attrs
