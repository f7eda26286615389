"""
Review engine core: domain types, persistence, workflow and scheduling.
"""

from .engine import ReviewEngine, get_engine, reset_engine
from .errors import (
    ConfigurationError,
    DependencyUnavailable,
    IllegalTransition,
    InvalidRequest,
    InvariantViolation,
    NotFound,
    ReviewGateError,
    StaleStep,
)

__all__ = [
    'ReviewEngine',
    'get_engine',
    'reset_engine',
    'ReviewGateError',
    'InvalidRequest',
    'NotFound',
    'IllegalTransition',
    'StaleStep',
    'ConfigurationError',
    'DependencyUnavailable',
    'InvariantViolation',
]
