"""Canonical benchmark models, each returned as a ready-to-run simulation.

    from nonsmooth_simulator.core.scenarios import bouncing_ball

    with bouncing_ball(e=0.9, h=1e-3, T=2.0) as sim:
        df = sim.run()
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

import numpy as np

from .diagnostics import Diagnostics
from .dynamical_systems import FirstOrderLinearDS, LagrangianLinearDS
from .graph import Interaction, NonSmoothDynamicalSystem
from .integrators import make_integrator
from .laws import NewtonImpactNSL, RelayNSL
from .relations import FirstOrderLinearR, LagrangianLinearTIR
from .time_discretisation import TimeDiscretisation
from .time_stepping import TimeStepping

GRAVITY = 9.81


def bouncing_ball(
    height: float = 1.0,
    v0: float = 0.0,
    mass: float = 1.0,
    e: float = 0.9,
    g: float = GRAVITY,
    h: float = 5e-3,
    T: float = 2.0,
    integrator: str = "moreau_jean",
    params: Optional[Dict[str, Any]] = None,
    diagnostics: Optional[Diagnostics] = None,
) -> TimeStepping:
    """Point mass falling under gravity onto a unilateral floor at height 0."""
    nsds = NonSmoothDynamicalSystem(t0=0.0, T=T)
    ball = LagrangianLinearDS([height], [v0], mass, fext=[-mass * g], name="ball")
    nsds.insert_dynamical_system(ball)
    floor = Interaction(NewtonImpactNSL(e), LagrangianLinearTIR([[1.0]]), name="floor")
    nsds.link(floor, ball)

    sim = TimeStepping(nsds, TimeDiscretisation(0.0, h), params=params, diagnostics=diagnostics)
    sim.associate(make_integrator(integrator), ball)
    return sim


def ball_on_ball_chain(
    radius: float = 0.1,
    heights: Sequence[float] = (0.1, 0.5),
    masses: Sequence[float] = (1.0, 1.0),
    e: float = 0.5,
    g: float = GRAVITY,
    h: float = 5e-3,
    T: float = 1.0,
    integrator: str = "moreau_jean",
    params: Optional[Dict[str, Any]] = None,
    diagnostics: Optional[Diagnostics] = None,
) -> TimeStepping:
    """Vertical stack of balls: floor contact for the first, ball-ball contacts above.

    ``heights`` are the centre heights; gaps are ``q_1 - r`` for the floor and
    ``q_{j+1} - q_j - 2 r`` between neighbours.
    """
    if len(heights) != len(masses) or not heights:
        raise ValueError("heights and masses must be non-empty and of equal length")
    nsds = NonSmoothDynamicalSystem(t0=0.0, T=T)
    osi = make_integrator(integrator)
    balls = []
    for j, (q0, m) in enumerate(zip(heights, masses)):
        ball = LagrangianLinearDS([q0], [0.0], m, fext=[-m * g], name=f"ball{j}")
        nsds.insert_dynamical_system(ball)
        balls.append(ball)

    nsds.link(
        Interaction(NewtonImpactNSL(e), LagrangianLinearTIR([[1.0]], b=[-radius]), name="floor"),
        balls[0],
    )
    for j in range(len(balls) - 1):
        nsds.link(
            Interaction(
                NewtonImpactNSL(e),
                LagrangianLinearTIR([[-1.0, 1.0]], b=[-2.0 * radius]),
                name=f"contact{j}{j + 1}",
            ),
            balls[j],
            balls[j + 1],
        )

    sim = TimeStepping(nsds, TimeDiscretisation(0.0, h), params=params, diagnostics=diagnostics)
    for ball in balls:
        sim.associate(osi, ball)
    return sim


def relay_feedback(
    x0: Sequence[float] = (1.0,),
    A: Any = None,
    B: Any = None,
    C: Any = None,
    alpha: float = 1.0,
    h: float = 1e-2,
    T: float = 2.0,
    integrator: str = "euler_moreau",
    params: Optional[Dict[str, Any]] = None,
    diagnostics: Optional[Diagnostics] = None,
) -> TimeStepping:
    """Relay feedback ``dx/dt = A x + B λ``, ``y = C x``, ``λ ∈ -alpha sign(y)``.

    With the defaults (``A = 0``, ``B = C = 1``) the state slides down to the
    switching surface ``x = 0`` at rate ``alpha`` and stays there.
    """
    x0 = np.atleast_1d(np.asarray(x0, dtype=float))
    n = x0.size
    A = np.zeros((n, n)) if A is None else A
    B = np.ones((n, 1)) if B is None else B
    C = np.ones((1, n)) if C is None else C
    m = np.atleast_2d(np.asarray(C, dtype=float)).shape[0]

    nsds = NonSmoothDynamicalSystem(t0=0.0, T=T)
    plant = FirstOrderLinearDS(x0, A, name="plant")
    nsds.insert_dynamical_system(plant)
    relay = Interaction(RelayNSL(m, lb=-alpha, ub=alpha), FirstOrderLinearR(C=C, B=B), name="relay")
    nsds.link(relay, plant)

    sim = TimeStepping(nsds, TimeDiscretisation(0.0, h), params=params, diagnostics=diagnostics)
    sim.associate(make_integrator(integrator), plant)
    return sim
