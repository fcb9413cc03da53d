"""Correction overlay: apply active correction rules to query output."""

import logging
from collections.abc import Iterable, Sequence
from dataclasses import replace

from telemetrypy.core.models import CorrectionRule, OperationType, Sample

logger = logging.getLogger(__name__)


def apply_operation(operation: OperationType, value: float, operand: float) -> float:
    """Apply one arithmetic operation.

    Division by zero leaves the value unchanged.
    """
    match operation:
        case OperationType.ADD:
            return value + operand
        case OperationType.SUBTRACT:
            return value - operand
        case OperationType.MULTIPLY:
            return value * operand
        case OperationType.DIVIDE:
            if operand == 0:
                return value
            return value / operand


def apply_corrections(
    samples: Sequence[Sample], rules: Iterable[CorrectionRule]
) -> list[Sample]:
    """Apply every matching active rule to each sample.

    Rules compose left to right in the order given, which is the order the
    correction store returned them in. A rule matches a sample when target
    and metric are equal and the sample timestamp lies in the rule's
    validity interval.
    """
    active = [rule for rule in rules if rule.active]
    if not active:
        return list(samples)

    corrected: list[Sample] = []
    touched = 0
    for sample in samples:
        value = sample.value
        for rule in active:
            if rule.matches(sample):
                value = apply_operation(rule.operation, value, rule.operand)
        if value != sample.value:
            touched += 1
            sample = replace(sample, value=value)
        corrected.append(sample)

    logger.debug("Applied %d correction rules to %d samples", len(active), touched)
    return corrected
