"""Clinical rules attached to a therapy: Pydantic validation and JSON codec.

Stored as a JSON document (camelCase keys). Shape:

    {
      "safety": {"maxPerDay": 3, "minIntervalHours": 6, "noDriving": true},
      "course": {"totalDays": 10},
      "taper": {"steps": [{"startDate": "...", "durationDays": 5, "dosageLabel": "20 mg"}]},
      "interactions": {"spacing": [{"substance": "iron", "hours": 2}]},
      "monitoring": [{"kind": "bloodPressure", "doseRelation": "beforeDose", "offsetMinutes": 30}],
      "missedDosePolicy": {"type": "info", "title": "...", "text": "..."}
    }

Legacy monitoring entries carry only ``requiredBeforeDose`` + ``leadMinutes``;
they are migrated on load to ``doseRelation=beforeDose, offsetMinutes=leadMinutes``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

MonitoringKind = Literal["bloodPressure", "bloodGlucose", "temperature", "heartRate"]
MonitoringDoseRelation = Literal["beforeDose", "afterDose"]

MONITORING_KIND_LABELS: dict[str, str] = {
    "bloodPressure": "Pressione",
    "bloodGlucose": "Glicemia",
    "temperature": "Temperatura",
    "heartRate": "Frequenza cardiaca",
}

DOSE_RELATION_LABELS: dict[str, str] = {
    "beforeDose": "Prima della dose",
    "afterDose": "Dopo la dose",
}

DEFAULT_MONITORING_OFFSET_MINUTES = 30


class _RulesModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SafetyRules(_RulesModel):
    max_per_day: int | None = None
    min_interval_hours: int | None = None
    no_driving: bool | None = None


class CoursePlan(_RulesModel):
    total_days: int

    @field_validator("total_days")
    @classmethod
    def total_days_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("totalDays must be positive")
        return v


class TaperStep(_RulesModel):
    start_date: datetime | None = None
    duration_days: int | None = None
    dosage_label: str


class TaperPlan(_RulesModel):
    steps: list[TaperStep]


class SpacingRule(_RulesModel):
    substance: str
    hours: int
    direction: str | None = None


class InteractionRules(_RulesModel):
    spacing: list[SpacingRule] | None = None


class MonitoringSchedule(_RulesModel):
    rrule: str | None = None
    times: list[datetime] | None = None


class MonitoringAction(_RulesModel):
    kind: MonitoringKind
    dose_relation: MonitoringDoseRelation | None = None
    offset_minutes: int | None = None
    required_before_dose: bool = False
    schedule: MonitoringSchedule | None = None
    lead_minutes: int | None = None

    @model_validator(mode="after")
    def migrate_legacy_lead(self) -> "MonitoringAction":
        if (
            self.dose_relation is None
            and self.offset_minutes is None
            and self.required_before_dose
            and self.lead_minutes is not None
        ):
            self.dose_relation = "beforeDose"
            self.offset_minutes = self.lead_minutes
        return self

    @property
    def resolved_dose_relation(self) -> MonitoringDoseRelation:
        if self.dose_relation is not None:
            return self.dose_relation
        return "beforeDose" if self.required_before_dose else "afterDose"

    @property
    def resolved_offset_minutes(self) -> int:
        if self.offset_minutes is not None:
            return max(0, self.offset_minutes)
        if self.lead_minutes is not None:
            return max(0, self.lead_minutes)
        return DEFAULT_MONITORING_OFFSET_MINUTES


class NoMissedDosePolicy(_RulesModel):
    type: Literal["none"] = "none"


class InfoMissedDosePolicy(_RulesModel):
    type: Literal["info"] = "info"
    title: str | None = None
    text: str

    @field_validator("text")
    @classmethod
    def text_not_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("text must not be empty")
        return v


MissedDosePolicy = Annotated[
    Union[NoMissedDosePolicy, InfoMissedDosePolicy],
    Field(discriminator="type"),
]


class ClinicalRules(_RulesModel):
    safety: SafetyRules | None = None
    course: CoursePlan | None = None
    taper: TaperPlan | None = None
    interactions: InteractionRules | None = None
    monitoring: list[MonitoringAction] | None = None
    missed_dose_policy: MissedDosePolicy | None = None

    @property
    def has_missed_dose_policy(self) -> bool:
        return self.missed_dose_policy is not None and self.missed_dose_policy.type != "none"

    def encode(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


def decode_clinical_rules(raw: str | bytes | None) -> ClinicalRules | None:
    """Decode a stored rules document; unreadable documents decode to None."""
    if not raw:
        return None
    try:
        return ClinicalRules.model_validate_json(raw)
    except ValidationError:
        return None


# ---------------------------------------------------------------------------
# Monitoring todo ids
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MonitoringTodoId:
    kind: str
    relation: MonitoringDoseRelation
    therapy_key: str
    dose_at: datetime
    trigger_at: datetime

    def encode(self) -> str:
        return build_monitoring_todo_id(
            kind=self.kind,
            relation=self.relation,
            therapy_key=self.therapy_key,
            dose_at=self.dose_at,
            trigger_at=self.trigger_at,
        )


def build_monitoring_todo_id(
    *,
    kind: str,
    relation: MonitoringDoseRelation,
    therapy_key: str,
    dose_at: datetime,
    trigger_at: datetime,
) -> str:
    return (
        f"monitoring|dose|{kind}|{relation}|{therapy_key}"
        f"|{int(dose_at.timestamp())}|{int(trigger_at.timestamp())}"
    )


def parse_monitoring_todo_id(raw: str) -> MonitoringTodoId | None:
    """Parse both the current (7-part) and legacy (5-part) dose monitoring ids."""
    parts = raw.split("|")
    if len(parts) < 5 or parts[0] != "monitoring" or parts[1] != "dose":
        return None
    try:
        if len(parts) == 7 and parts[3] in DOSE_RELATION_LABELS:
            dose_at = datetime.fromtimestamp(int(parts[5]), tz=UTC)
            trigger_at = datetime.fromtimestamp(int(parts[6]), tz=UTC)
            return MonitoringTodoId(parts[2], parts[3], parts[4], dose_at, trigger_at)  # type: ignore[arg-type]
        if len(parts) == 5:
            dose_at = datetime.fromtimestamp(int(parts[4]), tz=UTC)
            return MonitoringTodoId(parts[2], "beforeDose", parts[3], dose_at, dose_at)
    except ValueError:
        return None
    return None
