"""Tests for the effective (non-reversed) ledger views."""

from dataclasses import replace
from datetime import UTC, date, timedelta
from uuid import uuid4

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from builders import START, at, build_medicine, make_event, stocked, undo_of, with_events
from pharma_engine.forecast import leftover_units
from pharma_engine.ledger import (
    effective_events,
    effective_intake_logs,
    effective_intake_logs_on,
    has_effective_prescription_received,
    has_matching_intake_log,
    has_new_prescription_request,
    intake_logs_for_therapy,
    package_leftover,
    reversed_operation_ids,
    stock_delta_for,
)
from pharma_engine.models import Therapy


class TestEffectiveEvents:
    def test_reversed_event_and_reversal_are_both_hidden(self):
        medicine = build_medicine()
        intake = make_event(medicine, "intake", at(8))
        undo = undo_of(medicine, intake, at(9))
        kept = make_event(medicine, "intake", at(10))
        events = (intake, undo, kept)

        assert reversed_operation_ids(events) == {intake.operation_id}
        assert effective_events(events) == [kept]
        assert effective_intake_logs(events) == [kept]

    def test_filter_by_kind(self):
        medicine = build_medicine()
        purchase = make_event(medicine, "purchase", at(7))
        intake = make_event(medicine, "intake", at(8))
        assert effective_events((purchase, intake), "purchase") == [purchase]

    def test_intake_logs_on_day(self):
        medicine = build_medicine()
        yesterday = make_event(medicine, "intake", at(8, day=9))
        today = make_event(medicine, "intake", at(8))
        assert effective_intake_logs_on((yesterday, today), date(2026, 3, 10), UTC) == [today]

    def test_intake_logs_sorted_and_filtered_by_therapy(self):
        medicine = build_medicine()
        therapy_id = medicine.therapies[0].id
        late = make_event(medicine, "intake", at(20), therapy_id=therapy_id)
        early = make_event(medicine, "intake", at(8), therapy_id=therapy_id)
        other = make_event(medicine, "intake", at(9), therapy_id=uuid4())
        assert effective_intake_logs((late, early, other), therapy_id=therapy_id) == [early, late]


class TestIntakeAttribution:
    def _two_therapies(self):
        medicine = build_medicine(times=("08:00",))
        first = medicine.therapies[0]
        second = Therapy(
            id=uuid4(),
            medicine_id=medicine.id,
            package_id=uuid4(),
            rrule="RRULE:FREQ=DAILY",
            doses=first.doses,
            start_date=START,
        )
        return replace(medicine, therapies=(first, second)), first, second

    def test_unassigned_log_counts_for_single_therapy(self):
        medicine = build_medicine()
        log = replace(make_event(medicine, "intake", at(8)), package_id=None)
        medicine = with_events(medicine, log)
        assert intake_logs_for_therapy(medicine, medicine.therapies[0]) == [log]

    def test_unassigned_log_needs_matching_package_with_two_therapies(self):
        medicine, first, second = self._two_therapies()
        log = make_event(medicine, "intake", at(8))  # first therapy's package
        medicine = with_events(medicine, log)
        assert intake_logs_for_therapy(medicine, first) == [log]
        assert intake_logs_for_therapy(medicine, second) == []

    def test_log_assigned_to_other_therapy_never_counts(self):
        medicine, first, second = self._two_therapies()
        log = make_event(medicine, "intake", at(8), therapy_id=second.id)
        medicine = with_events(medicine, log)
        assert intake_logs_for_therapy(medicine, first) == []

    def test_matching_log_within_tolerance(self):
        medicine = build_medicine()
        medicine = with_events(medicine, make_event(medicine, "intake", at(8, 40)))
        therapy = medicine.therapies[0]
        assert has_matching_intake_log(medicine, therapy, at(8), timedelta(hours=1))
        assert not has_matching_intake_log(medicine, therapy, at(8), timedelta(minutes=30))


class TestPrescriptionState:
    def test_request_pending_until_purchase(self):
        medicine = build_medicine()
        request = make_event(medicine, "prescription_request", at(8))
        assert has_new_prescription_request((request,))
        purchase = make_event(medicine, "purchase", at(9))
        assert not has_new_prescription_request((request, purchase))

    def test_undone_request_is_not_pending(self):
        medicine = build_medicine()
        request = make_event(medicine, "prescription_request", at(8))
        assert not has_new_prescription_request((request, undo_of(medicine, request, at(9))))

    def test_received_is_consumed_by_purchase(self):
        medicine = build_medicine()
        received = make_event(medicine, "prescription_received", at(8))
        assert has_effective_prescription_received((received,))
        purchase = make_event(medicine, "purchase", at(10))
        assert not has_effective_prescription_received((received, purchase))


class TestStockDelta:
    def test_per_kind(self):
        assert stock_delta_for("purchase", 2, 20) == 40
        assert stock_delta_for("intake", 1) == -1
        assert stock_delta_for("stock_adjustment", 3) == -3
        assert stock_delta_for("prescription_request", 1) == 0
        assert stock_delta_for("prescription_received", 1) == 0

    def test_package_leftover(self):
        medicine = stocked(build_medicine(units_per_pack=20), packs=2)
        medicine = with_events(
            medicine,
            make_event(medicine, "intake", at(8)),
            make_event(medicine, "stock_adjustment", at(9), quantity=3),
        )
        assert package_leftover(medicine.events, medicine.packages[0]) == 36

    def test_undo_restores_leftover(self):
        medicine = stocked(build_medicine(units_per_pack=20))
        intake = make_event(medicine, "intake", at(8))
        medicine = with_events(medicine, intake)
        assert package_leftover(medicine.events, medicine.packages[0]) == 19
        medicine = with_events(medicine, undo_of(medicine, intake, at(9)))
        assert package_leftover(medicine.events, medicine.packages[0]) == 20


class TestStockNeverNegative:
    def test_intake_on_empty_stock(self):
        medicine = build_medicine()
        medicine = with_events(medicine, make_event(medicine, "intake", at(8)))
        assert package_leftover(medicine.events, medicine.packages[0]) == -1
        assert leftover_units(medicine.therapies[0], medicine) == 0

    @given(
        purchases=st.integers(0, 3),
        intakes=st.integers(0, 80),
        pack=st.integers(1, 30),
    )
    @settings(max_examples=50, suppress_health_check=[HealthCheck.too_slow])
    def test_leftover_units_clamped(self, purchases, intakes, pack):
        medicine = build_medicine(units_per_pack=pack)
        events = [make_event(medicine, "purchase", START) for _ in range(purchases)]
        events += [make_event(medicine, "intake", at(8)) for _ in range(intakes)]
        medicine = with_events(medicine, *events)
        units = leftover_units(medicine.therapies[0], medicine)
        assert units == max(0, purchases * pack - intakes)
