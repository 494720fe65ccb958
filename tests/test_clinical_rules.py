"""Tests for clinical rule validation, JSON codec and monitoring ids."""

import json
from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from pharma_engine.clinical_rules import (
    ClinicalRules,
    MonitoringAction,
    build_monitoring_todo_id,
    decode_clinical_rules,
    parse_monitoring_todo_id,
)

DOSE_AT = datetime(2026, 3, 10, 8, 0, tzinfo=UTC)
TRIGGER_AT = datetime(2026, 3, 10, 7, 30, tzinfo=UTC)


class TestClinicalRulesCodec:
    def test_camel_case_document(self):
        rules = ClinicalRules.model_validate(
            {
                "safety": {"maxPerDay": 3, "minIntervalHours": 6, "noDriving": True},
                "course": {"totalDays": 10},
                "interactions": {"spacing": [{"substance": "ferro", "hours": 2}]},
                "missedDosePolicy": {"type": "info", "title": "Dose saltata", "text": "Non raddoppiare"},
            }
        )
        assert rules.safety.max_per_day == 3
        assert rules.course.total_days == 10
        assert rules.interactions.spacing[0].substance == "ferro"
        assert rules.has_missed_dose_policy

    def test_encode_omits_empty_sections(self):
        rules = ClinicalRules.model_validate({"course": {"totalDays": 5}})
        assert json.loads(rules.encode()) == {"course": {"totalDays": 5}}

    def test_encode_decode(self):
        rules = ClinicalRules.model_validate(
            {"monitoring": [{"kind": "bloodPressure", "doseRelation": "afterDose", "offsetMinutes": 15}]}
        )
        assert decode_clinical_rules(rules.encode()) == rules

    def test_none_policy_is_not_a_policy(self):
        rules = ClinicalRules.model_validate({"missedDosePolicy": {"type": "none"}})
        assert not rules.has_missed_dose_policy

    def test_unreadable_document_decodes_to_none(self):
        assert decode_clinical_rules("{not json") is None
        assert decode_clinical_rules('{"course": {"totalDays": 0}}') is None
        assert decode_clinical_rules(None) is None
        assert decode_clinical_rules("") is None

    def test_empty_info_text_rejected(self):
        with pytest.raises(ValidationError):
            ClinicalRules.model_validate({"missedDosePolicy": {"type": "info", "text": "  "}})

    def test_unknown_monitoring_kind_rejected(self):
        with pytest.raises(ValidationError):
            MonitoringAction.model_validate({"kind": "weight"})


class TestMonitoringAction:
    def test_legacy_lead_is_migrated(self):
        action = MonitoringAction.model_validate(
            {"kind": "bloodGlucose", "requiredBeforeDose": True, "leadMinutes": 45}
        )
        assert action.dose_relation == "beforeDose"
        assert action.offset_minutes == 45

    def test_defaults(self):
        action = MonitoringAction.model_validate({"kind": "temperature"})
        assert action.resolved_dose_relation == "afterDose"
        assert action.resolved_offset_minutes == 30

    def test_negative_offset_clamped(self):
        action = MonitoringAction.model_validate({"kind": "heartRate", "offsetMinutes": -5})
        assert action.resolved_offset_minutes == 0


class TestMonitoringTodoId:
    def test_build_and_parse(self):
        raw = build_monitoring_todo_id(
            kind="bloodPressure",
            relation="beforeDose",
            therapy_key="t1",
            dose_at=DOSE_AT,
            trigger_at=TRIGGER_AT,
        )
        assert raw == f"monitoring|dose|bloodPressure|beforeDose|t1|{int(DOSE_AT.timestamp())}|{int(TRIGGER_AT.timestamp())}"
        parsed = parse_monitoring_todo_id(raw)
        assert parsed.relation == "beforeDose"
        assert parsed.dose_at == DOSE_AT
        assert parsed.trigger_at == TRIGGER_AT
        assert parsed.encode() == raw

    def test_legacy_five_part_id(self):
        parsed = parse_monitoring_todo_id(f"monitoring|dose|bloodGlucose|t1|{int(DOSE_AT.timestamp())}")
        assert parsed.relation == "beforeDose"
        assert parsed.trigger_at == parsed.dose_at == DOSE_AT

    def test_garbage(self):
        assert parse_monitoring_todo_id("purchase|abc") is None
        assert parse_monitoring_todo_id("monitoring|dose|a|b|not-a-number") is None
        assert parse_monitoring_todo_id("monitoring|dose|a|sideways|t|1|2") is None
