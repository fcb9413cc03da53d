"""Request bodies accepted by the HTTP adapter."""

from datetime import datetime

from pydantic import BaseModel

from telemetrypy.core.models import CorrectionRule, OperationType, from_datetime


class CorrectionPayload(BaseModel):
    name: str | None = None
    description: str | None = None
    target_name: str
    key_name: str
    operation_type: str
    value: float
    start_time: datetime | None = None
    end_time: datetime | None = None
    is_active: bool = True

    def to_rule(self, rule_id: int | None = None) -> CorrectionRule:
        """Build a rule, naming it after its operation when no name is given.

        Raises:
            InvalidSpec: If operation_type names no known operation.
        """
        operation = OperationType.parse(self.operation_type)
        name = self.name or f"{operation.value} {self.target_name}/{self.key_name}"
        return CorrectionRule(
            id=rule_id,
            name=name,
            description=self.description,
            target=self.target_name,
            metric=self.key_name,
            operation=operation,
            operand=self.value,
            start=from_datetime(self.start_time) if self.start_time else None,
            end=from_datetime(self.end_time) if self.end_time else None,
            active=self.is_active,
        )
