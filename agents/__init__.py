"""
Step specifications, spoken replies and the tier-3 identification agent.
"""
from .specs import (
    STEP_SPECS,
    StepContext,
    StepSpec,
    build_step_context,
    get_step_spec,
)

__all__ = [
    "STEP_SPECS",
    "StepContext",
    "StepSpec",
    "build_step_context",
    "get_step_spec",
]
