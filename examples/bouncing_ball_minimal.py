from pathlib import Path

import numpy as np

from nonsmooth_simulator.config import build_simulation, load_scenario_config


def main():
    project_root = Path(__file__).resolve().parents[1]
    cfg_path = project_root / "configs" / "bouncing_ball.yml"

    cfg = load_scenario_config(cfg_path)
    with build_simulation(cfg) as sim:
        df = sim.run()

    ball = sim.nsds.dynamical_system_by_name("ball")
    g = -float(ball.fext(0.0)[0]) / float(ball.mass[0, 0])
    energy = 0.5 * df["ball.v0"] ** 2 + g * df["ball.q0"]
    impacts = int(np.count_nonzero(df["floor.lambda1"] > 0.0))

    print(df[["time", "ball.q0", "ball.v0", "floor.lambda1"]].tail())
    print(f"Impacts: {impacts}")
    print(f"Energy ratio E(T)/E(0): {energy.iloc[-1] / energy.iloc[0]:.3f}")
    print(f"Newton iterations: {df.attrs['cumulative_newton_iterations']}")


if __name__ == "__main__":
    main()
