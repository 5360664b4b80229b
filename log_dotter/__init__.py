"""Synthetic log traffic generator with a runtime-controllable burst schedule."""

__version__ = "0.1.0"
