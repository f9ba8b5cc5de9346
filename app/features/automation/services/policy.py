"""
Typed per-stage email policy.

Policies arrive as JSON (environment or the email_settings table) and are
validated into StagePolicy objects when loaded, so the dispatcher never
reads free-form dictionaries.
"""

import json
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from app.config import settings
from app.features.automation.domain import PolicyValidationError
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ReminderPolicy(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    enabled: bool = False
    delay_hours: int = Field(
        default_factory=lambda: settings.REMINDER_DEFAULT_DELAY_HOURS, alias="delayHours", ge=1
    )


class StagePolicy(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    enabled: bool = False
    delay_minutes: int = Field(default=0, alias="delayMinutes", ge=0)
    template_id: str | None = Field(default=None, alias="templateId")
    reminder: ReminderPolicy = Field(default_factory=ReminderPolicy)

    @model_validator(mode="before")
    @classmethod
    def fold_legacy_reminder_keys(cls, data: Any) -> Any:
        """Accept the flat reminderEnabled / reminderDelayHours keys."""
        if not isinstance(data, dict):
            return data
        if "reminderEnabled" not in data and "reminderDelayHours" not in data:
            return data

        data = dict(data)
        reminder = dict(data.get("reminder") or {})
        if "reminderEnabled" in data:
            reminder.setdefault("enabled", data.pop("reminderEnabled"))
        if "reminderDelayHours" in data:
            delay = data.pop("reminderDelayHours")
            # A zero/empty legacy delay means "use the default"
            if delay:
                reminder.setdefault("delayHours", delay)
        data["reminder"] = reminder
        return data


class StagePolicyRegistry:
    """Mapping of stage name to validated policy."""

    def __init__(self, policies: dict[str, StagePolicy] | None = None):
        self._policies = dict(policies or {})

    @classmethod
    def from_mapping(cls, raw: dict[str, Any] | None) -> "StagePolicyRegistry":
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise PolicyValidationError("Stage policies must be a mapping of stage to policy")

        policies: dict[str, StagePolicy] = {}
        for stage, value in raw.items():
            try:
                policies[stage] = StagePolicy.model_validate(value)
            except ValidationError as e:
                raise PolicyValidationError(
                    f"Invalid email policy for stage {stage}: {e.errors()[0]['msg']}",
                    operation="load_policies",
                ) from e
        return cls(policies)

    @classmethod
    def from_json(cls, payload: str) -> "StagePolicyRegistry":
        try:
            raw = json.loads(payload)
        except json.JSONDecodeError as e:
            raise PolicyValidationError(f"Stage policies are not valid JSON: {e}", operation="load_policies") from e
        return cls.from_mapping(raw)

    def for_stage(self, stage: str) -> StagePolicy | None:
        return self._policies.get(stage)

    def stages(self) -> list[str]:
        return sorted(self._policies)


class AutoSendStagesSource(Protocol):
    async def load_auto_send_stages(self) -> dict | None: ...


class StagePolicyProvider:
    """
    Loads the policy registry for each decision.

    STAGE_EMAIL_POLICIES takes precedence; otherwise the organisation's
    email_settings row is read so UI edits apply without a restart.
    """

    def __init__(self, source: AutoSendStagesSource, static_json: str | None = None):
        self._source = source
        self._static = StagePolicyRegistry.from_json(static_json) if static_json else None

    async def registry(self) -> StagePolicyRegistry:
        if self._static is not None:
            return self._static
        return StagePolicyRegistry.from_mapping(await self._source.load_auto_send_stages())

    async def for_stage(self, stage: str) -> StagePolicy | None:
        return (await self.registry()).for_stage(stage)
