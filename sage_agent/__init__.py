"""Sage Agent - turn-processing pipeline for the Sage chat agent."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("sage-agent")
except PackageNotFoundError:
    __version__ = "0.3.0"

__brand__ = "sage"
