"""Tests for consumption and stock forecasts."""

from dataclasses import replace
from uuid import uuid4

import pytest

from builders import at, build_medicine, dose, make_event, stocked, with_events
from pharma_engine.forecast import daily_usage, forecast_medicine, remaining_units_without_therapy
from pharma_engine.models import Option


class TestDailyUsage:
    def test_daily_twice(self):
        medicine = build_medicine(times=("08:00", "20:00"))
        assert daily_usage(medicine.therapies[0]) == 2.0

    def test_dose_amounts_add_up(self):
        medicine = build_medicine()
        therapy = replace(medicine.therapies[0], doses=(dose("08:00", 0.5), dose("20:00", 1.5)))
        assert daily_usage(therapy) == 2.0

    def test_every_other_day(self):
        medicine = build_medicine(rrule="RRULE:FREQ=DAILY;INTERVAL=2")
        assert daily_usage(medicine.therapies[0]) == 0.5

    def test_weekly_byday(self):
        medicine = build_medicine(rrule="RRULE:FREQ=WEEKLY;BYDAY=MO,WE,FR")
        assert daily_usage(medicine.therapies[0]) == pytest.approx(3 / 7)

    def test_weekly_without_byday_is_daily(self):
        medicine = build_medicine(rrule="RRULE:FREQ=WEEKLY")
        assert daily_usage(medicine.therapies[0]) == pytest.approx(1.0)

    def test_cycle_scales_usage(self):
        medicine = build_medicine(rrule="RRULE:FREQ=DAILY;X-APP-ON=7;X-APP-OFF=21")
        assert daily_usage(medicine.therapies[0]) == pytest.approx(0.25)

    def test_no_doses_no_usage(self):
        medicine = build_medicine(times=())
        assert daily_usage(medicine.therapies[0]) == 0.0


class TestForecastWithTherapy:
    def test_ok(self):
        medicine = stocked(build_medicine(units_per_pack=30))
        forecast = forecast_medicine(medicine)
        assert forecast.status == "ok"
        assert forecast.coverage_days == 30.0
        assert forecast.autonomy_days == 30
        assert not forecast.needs_attention

    def test_low_below_threshold(self):
        medicine = stocked(build_medicine(times=("08:00", "20:00"), units_per_pack=10))
        forecast = forecast_medicine(medicine)
        assert forecast.coverage_days == 5.0
        assert forecast.status == "low"

    def test_threshold_from_option(self):
        medicine = stocked(build_medicine(units_per_pack=10))
        assert forecast_medicine(medicine, Option(stock_threshold_days=14)).status == "low"
        assert forecast_medicine(medicine, Option(stock_threshold_days=5)).status == "ok"

    def test_medicine_threshold_wins(self):
        medicine = stocked(build_medicine(units_per_pack=10, stock_threshold_days=3))
        forecast = forecast_medicine(medicine, Option(stock_threshold_days=14))
        assert forecast.threshold_days == 3
        assert forecast.status == "ok"

    def test_depleted_is_critical(self):
        medicine = build_medicine(units_per_pack=2)
        medicine = stocked(medicine)
        medicine = with_events(
            medicine,
            make_event(medicine, "intake", at(8, day=1)),
            make_event(medicine, "intake", at(8, day=2)),
        )
        forecast = forecast_medicine(medicine)
        assert forecast.leftover_units == 0
        assert forecast.status == "critical"
        assert forecast.is_depleted

    def test_overdrawn_is_critical_and_clamped(self):
        medicine = build_medicine()
        medicine = with_events(medicine, make_event(medicine, "intake", at(8)))
        forecast = forecast_medicine(medicine)
        assert forecast.leftover_units == 0
        assert forecast.coverage_days == 0.0
        assert forecast.status == "critical"

    def test_zero_usage_with_stock_is_ok(self):
        medicine = stocked(build_medicine(times=()))
        forecast = forecast_medicine(medicine)
        assert forecast.status == "ok"
        assert forecast.coverage_days is None
        assert forecast.autonomy_days is None

    def test_zero_usage_without_stock_is_critical(self):
        assert forecast_medicine(build_medicine(times=())).status == "critical"

    def test_shared_package_counted_once(self):
        medicine = stocked(build_medicine(units_per_pack=20))
        first = medicine.therapies[0]
        second = replace(first, id=uuid4())
        medicine = replace(medicine, therapies=(first, second))
        forecast = forecast_medicine(medicine)
        assert forecast.daily_usage == 2.0
        assert forecast.coverage_days == 10.0

    def test_unknown_package(self):
        medicine = build_medicine()
        medicine = replace(medicine, packages=())
        assert forecast_medicine(medicine).status == "unknown"


class TestForecastWithoutTherapy:
    def test_units_against_threshold(self):
        medicine = stocked(build_medicine(with_therapy=False, units_per_pack=5))
        assert remaining_units_without_therapy(medicine) == 5
        assert forecast_medicine(medicine).status == "low"

    def test_plenty(self):
        medicine = stocked(build_medicine(with_therapy=False, units_per_pack=50))
        assert forecast_medicine(medicine).status == "ok"

    def test_nothing_left(self):
        assert forecast_medicine(build_medicine(with_therapy=False)).status == "critical"

    def test_no_packages(self):
        medicine = replace(build_medicine(with_therapy=False), packages=())
        assert forecast_medicine(medicine).status == "unknown"


class TestNeedsPrescription:
    def test_low_stock_requires_prescription(self):
        medicine = stocked(build_medicine(units_per_pack=5, requires_prescription=True))
        assert forecast_medicine(medicine).needs_prescription

    def test_not_required(self):
        medicine = stocked(build_medicine(units_per_pack=5))
        assert not forecast_medicine(medicine).needs_prescription

    def test_pending_request_suppresses(self):
        medicine = stocked(build_medicine(units_per_pack=5, requires_prescription=True))
        medicine = with_events(medicine, make_event(medicine, "prescription_request", at(9)))
        assert not forecast_medicine(medicine).needs_prescription

    def test_received_prescription_suppresses(self):
        medicine = stocked(build_medicine(units_per_pack=5, requires_prescription=True))
        medicine = with_events(medicine, make_event(medicine, "prescription_received", at(9)))
        assert not forecast_medicine(medicine).needs_prescription

    def test_enough_stock(self):
        medicine = stocked(build_medicine(units_per_pack=60, requires_prescription=True))
        assert not forecast_medicine(medicine).needs_prescription

    def test_without_therapy_uses_units(self):
        medicine = stocked(
            build_medicine(with_therapy=False, units_per_pack=7, requires_prescription=True)
        )
        assert forecast_medicine(medicine).needs_prescription
