"""Static gate table: every validator, grouped by gate and ordered for execution."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List

from . import contract, execution, integrity, red_check, sanitization, scope
from .base import ValidatorDefinition


class UnknownValidatorError(KeyError):
    """Raised when a validator code is not part of the registry."""


class UnknownGateError(KeyError):
    """Raised when a gate number is not part of the registry."""


@dataclass(frozen=True, slots=True)
class GateDefinition:
    number: int
    name: str
    description: str
    validators: tuple[ValidatorDefinition, ...]

    @property
    def codes(self) -> List[str]:
        return [validator.code for validator in self.validators]


_GATE_INFO = (
    (0, "SANITIZATION", "Task prompt and declared scope are well-formed and safe."),
    (1, "CONTRACT", "The generated test is a meaningful contract that fails before implementation."),
    (2, "EXECUTION", "The implementation stays in scope, passes its test, compiles, and lints."),
    (3, "INTEGRITY", "The full suite and the production build still pass."),
)

_ALL_VALIDATORS: tuple[ValidatorDefinition, ...] = (
    *sanitization.VALIDATORS,
    *contract.VALIDATORS,
    *red_check.VALIDATORS,
    *scope.VALIDATORS,
    *execution.VALIDATORS,
    *integrity.VALIDATORS,
)


def _build_gates(definitions: Iterable[ValidatorDefinition]) -> Dict[int, GateDefinition]:
    grouped: Dict[int, List[ValidatorDefinition]] = {number: [] for number, _, _ in _GATE_INFO}
    for definition in definitions:
        if definition.gate not in grouped:
            raise UnknownGateError(definition.gate)
        grouped[definition.gate].append(definition)
    gates: Dict[int, GateDefinition] = {}
    for number, name, description in _GATE_INFO:
        ordered = sorted(grouped[number], key=lambda item: item.order)
        orders = [item.order for item in ordered]
        if len(set(orders)) != len(orders):
            raise ValueError(f"Duplicate validator order in gate {number}: {orders}")
        gates[number] = GateDefinition(number, name, description, tuple(ordered))
    return gates


GATES: Dict[int, GateDefinition] = _build_gates(_ALL_VALIDATORS)

VALIDATOR_DISPATCH: Dict[str, ValidatorDefinition] = {
    definition.code: definition for definition in _ALL_VALIDATORS
}


def get_gate(number: int) -> GateDefinition:
    try:
        return GATES[number]
    except KeyError as error:
        raise UnknownGateError(f"Unknown gate: {number}") from error


def get_validator(code: str) -> ValidatorDefinition:
    try:
        return VALIDATOR_DISPATCH[code]
    except KeyError as error:
        raise UnknownValidatorError(f"Unknown validator code: {code}") from error


def gate_for_code(code: str) -> int:
    """Return the gate number that owns validator ``code``."""

    return get_validator(code).gate


__all__ = [
    "GATES",
    "GateDefinition",
    "UnknownGateError",
    "UnknownValidatorError",
    "VALIDATOR_DISPATCH",
    "gate_for_code",
    "get_gate",
    "get_validator",
]
