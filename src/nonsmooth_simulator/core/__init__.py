"""Time-stepping engine: models, integrators, nonsmooth problem and orchestrator."""
