"""CLI package for interacting with the iLO thermal sync service."""

from importlib import import_module
from types import ModuleType


def __getattr__(name: str) -> ModuleType:
    if name == "app":
        return import_module("cli.app")
    raise AttributeError(name)

# ``cli.app`` must keep resolving to the module so tests can patch attributes
# on it; the Typer instance is not re-exported from the package root.

__all__ = []
