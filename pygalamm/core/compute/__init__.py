"""
Shared compute infrastructure for pygalamm.

Submodules:
    timing: Execution timing utilities
"""

from pygalamm.core.compute.timing import Timer

__all__ = [
    "Timer",
]
