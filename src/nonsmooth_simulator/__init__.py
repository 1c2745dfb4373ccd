"""
Nonsmooth Simulator package.

Event-capturing time-stepping of dynamical systems with unilateral
contacts, impacts and relays. The numerical engine lives in
``nonsmooth_simulator.core``; ``import nonsmooth_simulator`` stays
lightweight so that ``nonsmooth-sim --help`` is fast.
"""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("nonsmooth-simulator")
except PackageNotFoundError:  # during editable installs
    __version__ = "0.0.0"

__all__ = ["__version__"]
