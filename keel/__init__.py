"""
Keel - Declarative desired-state resource graphs in Python.

Declare resources as typed Python objects, wire them together with references
to each other's outputs, and let Keel work out the rest:

- Dependencies are discovered from references and checked for cycles
- Declarations are diffed against the last state snapshot
  (create / update / replace / delete / no-op)
- Changes are ordered into a plan and applied through a provider, with
  independent resources in parallel and state recorded after every step

Re-running apply after a failure picks up where it stopped.
"""

from .config import StackConfig, load_stack_config
from .core import KeelCore
from .settings import KeelSettings, get_settings, reload_settings
from .stack import Stack

__version__ = "0.1.0"
__all__ = [
    "KeelCore",
    "KeelSettings",
    "Stack",
    "StackConfig",
    "get_settings",
    "load_stack_config",
    "reload_settings",
]
