"""Runner: on-demand and scheduled invocation."""

from .cli import main, run_main, run_once, run_scheduled

__all__ = [
    "main",
    "run_main",
    "run_once",
    "run_scheduled",
]
