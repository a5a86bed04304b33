"""Validators grouped into the four ordered gates."""

from .base import (
    TEST_FILE_NOT_CONFIGURED,
    ValidationContext,
    ValidationServices,
    ValidatorDefinition,
    ValidatorOutput,
)
from .registry import (
    GATES,
    VALIDATOR_DISPATCH,
    GateDefinition,
    UnknownGateError,
    UnknownValidatorError,
    gate_for_code,
    get_gate,
    get_validator,
)

__all__ = [
    "GATES",
    "GateDefinition",
    "TEST_FILE_NOT_CONFIGURED",
    "UnknownGateError",
    "UnknownValidatorError",
    "VALIDATOR_DISPATCH",
    "ValidationContext",
    "ValidationServices",
    "ValidatorDefinition",
    "ValidatorOutput",
    "gate_for_code",
    "get_gate",
    "get_validator",
]
