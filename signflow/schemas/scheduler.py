from typing import List

from pydantic import BaseModel, Field, field_validator

from signflow.core.config import settings


class SchedulerConfig(BaseModel):
    expiry_warning_hours: int = Field(default_factory=lambda: settings.expiry_warning_hours, ge=0)
    deadline_warning_hours: int = Field(default_factory=lambda: settings.deadline_warning_hours, ge=0)
    auto_reminder_days: List[int] = Field(default_factory=lambda: list(settings.auto_reminder_days))
    enable_auto_reminders: bool = Field(default_factory=lambda: settings.enable_auto_reminders)
    enable_expiry_warnings: bool = Field(default_factory=lambda: settings.enable_expiry_warnings)
    enable_deadline_warnings: bool = Field(default_factory=lambda: settings.enable_deadline_warnings)

    @field_validator("auto_reminder_days")
    @classmethod
    def positive_days(cls, value: List[int]) -> List[int]:
        if any(day < 0 for day in value):
            raise ValueError("auto_reminder_days must not contain negative values")
        return value


class CheckResult(BaseModel):
    processed: int = 0
    notified: int = 0
    errors: List[str] = Field(default_factory=list)


class SweepResult(BaseModel):
    processed: int = 0
    expired: int = 0
    errors: List[str] = Field(default_factory=list)


class DispatchResult(BaseModel):
    delivered: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)


class SchedulerReport(BaseModel):
    expired: CheckResult
    deadline_warnings: CheckResult
    auto_reminders: CheckResult
    total_errors: int
    dispatched: DispatchResult | None = None
