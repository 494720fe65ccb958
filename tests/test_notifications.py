"""Tests for notification planning, rendering, scheduling and alarm actions."""

from datetime import timedelta

import pytest

from builders import NOW, at, build_medicine, make_event, stocked, with_events
from pharma_engine.metrics import get_metrics, reset_metrics
from pharma_engine.models import Option
from pharma_engine.notifications import (
    ALARM_CATEGORY,
    ALARM_SERIES_KEY,
    ALARM_SNOOZE_ACTION,
    ALARM_STOP_ACTION,
    InMemoryNotificationCenter,
    InMemoryStockAlertStateStore,
    NotificationCenterError,
    NotificationPlan,
    NotificationPlanner,
    NotificationRequest,
    NotificationScheduler,
    PlanItem,
    StockAlertState,
    alarm_request_ids,
    alarm_series,
    build_requests,
    cap_requests,
    handle_alarm_action,
    normalized_snooze_minutes,
    render_requests,
    resolve_series_id,
)
from pharma_engine.operations import minute_bucket


def _stock_item(n):
    return PlanItem(
        id=f"stock-empty-now-{n}",
        fire_at=NOW + timedelta(seconds=1),
        title="Scorte finite",
        body="",
        kind="stockOut",
        origin="immediate",
    )


def _therapy_item(fire_at=None):
    return PlanItem(
        id="therapy-t1-100",
        fire_at=fire_at or at(20),
        title="È ora della terapia",
        body="Assumi Tachipirina",
        kind="therapy",
        origin="scheduled",
        user_info={"type": "therapy"},
    )


class TestPlanTherapy:
    def test_one_item_per_dose_in_horizon(self):
        medicine = stocked(build_medicine(times=("08:00", "20:00"), units_per_pack=60))
        items = NotificationPlanner().plan_therapy([medicine], NOW)
        therapy = medicine.therapies[0]
        assert [i.fire_at for i in items] == [at(20), at(8, day=11)]
        assert items[0].id == f"therapy-{therapy.id}-{minute_bucket(at(20))}"
        assert items[0].body == "Assumi Tachipirina"
        assert items[0].user_info == {
            "type": "therapy",
            "therapyId": str(therapy.id),
            "medicineId": str(medicine.id),
        }

    def test_just_missed_dose_fires_now(self):
        medicine = build_medicine(times=("11:59",))
        item = NotificationPlanner().plan_therapy([medicine], NOW)[0]
        assert item.origin == "immediate"
        assert item.fire_at == NOW

    def test_dose_outside_grace_window_is_dropped(self):
        medicine = build_medicine(times=("11:00",))
        items = NotificationPlanner().plan_therapy([medicine], NOW)
        assert [i.fire_at for i in items] == [at(11, day=11)]

    def test_logged_dose_is_skipped(self):
        medicine = build_medicine(times=("20:00",))
        medicine = with_events(medicine, make_event(medicine, "intake", at(19, 30)))
        assert NotificationPlanner().plan_therapy([medicine], NOW) == []

    def test_person_name_in_body(self):
        medicine = build_medicine("Eutirox", times=("20:00",), person_name="Maria")
        [item] = NotificationPlanner().plan_therapy([medicine], NOW)
        assert item.body == "Assumi Eutirox per Maria"

    def test_ids_are_stable_between_passes(self):
        medicine = build_medicine(times=("20:00",))
        planner = NotificationPlanner()
        assert planner.plan_therapy([medicine], NOW) == planner.plan_therapy([medicine], NOW + timedelta(minutes=5))


class TestPlanStock:
    def test_empty_stock_alerts_now_then_cools_down(self):
        medicine = build_medicine(times=("20:00",))
        planner = NotificationPlanner()
        [item] = planner.plan_stock([medicine], NOW)
        assert item.id == f"stock-empty-now-{medicine.id}"
        assert item.fire_at == NOW + timedelta(seconds=1)
        assert item.origin == "immediate"

        assert planner.plan_stock([medicine], NOW + timedelta(hours=47)) == []
        assert len(planner.plan_stock([medicine], NOW + timedelta(hours=48))) == 1

    def test_level_change_alerts_immediately(self):
        store = InMemoryStockAlertStateStore()
        medicine = build_medicine(times=("20:00",))
        store.set_state(medicine.id, StockAlertState("low", NOW - timedelta(hours=1)))
        items = NotificationPlanner(stock_alerts=store).plan_stock([medicine], NOW)
        assert [i.kind for i in items] == ["stockOut"]
        assert store.state(medicine.id).level == "empty"

    def test_restocked_medicine_clears_state(self):
        store = InMemoryStockAlertStateStore()
        medicine = stocked(build_medicine(units_per_pack=60))
        store.set_state(medicine.id, StockAlertState("empty", NOW))
        NotificationPlanner(stock_alerts=store).plan_stock([medicine], NOW)
        assert store.state(medicine.id) is None

    def test_low_stock_schedules_run_out(self):
        medicine = stocked(build_medicine(units_per_pack=5))
        items = NotificationPlanner().plan_stock([medicine], NOW)
        assert [i.id for i in items] == [f"stock-low-now-{medicine.id}", f"stock-out-{medicine.id}"]
        assert items[1].fire_at == at(9, day=15)

    def test_healthy_stock_schedules_low_and_out(self):
        medicine = stocked(build_medicine(units_per_pack=30))
        items = NotificationPlanner().plan_stock([medicine], NOW)
        assert {i.id: i.fire_at for i in items} == {
            f"stock-low-{medicine.id}": at(9, day=10) + timedelta(days=23),
            f"stock-out-{medicine.id}": at(9, day=10) + timedelta(days=30),
        }

    def test_far_run_out_is_not_scheduled(self):
        medicine = stocked(build_medicine(units_per_pack=100), packs=2)
        assert NotificationPlanner().plan_stock([medicine], NOW) == []


class TestRender:
    def test_normal_level_one_request_per_dose(self):
        [request] = render_requests([_therapy_item()], "normal")
        assert request.id == "therapy-t1-100"
        assert request.category == "therapy"
        assert request.time_sensitive

    def test_alarm_level_series_of_seven(self):
        requests = render_requests([_therapy_item()], "alarm")
        assert len(requests) == 7
        assert {r.series_id for r in requests} == {"t1-100"}
        assert [r.fire_at - requests[0].fire_at for r in requests] == [
            timedelta(minutes=i) for i in range(7)
        ]
        assert all(r.category == ALARM_CATEGORY for r in requests)
        assert requests[0].actions == (ALARM_STOP_ACTION, ALARM_SNOOZE_ACTION)
        assert [r.id for r in requests] == alarm_request_ids("t1-100")

    def test_stock_items_are_never_alarms(self):
        [request] = render_requests([_stock_item(1)], "alarm")
        assert request.category == "stockOut"


class TestCapAndBackup:
    def test_immediate_stock_first(self):
        requests = render_requests([_therapy_item(NOW + timedelta(seconds=1)), _stock_item(1)])
        capped = cap_requests(requests, 1)
        assert [r.id for r in capped] == ["stock-empty-now-1"]

    def test_cap_applies_to_rendered_alarm_requests(self):
        plan = NotificationPlan(therapy=[_therapy_item()], stock=[])
        assert len(build_requests(plan, NOW, level="alarm", cap=3)) == 3

    def test_backup_replaces_last_request_at_cap(self):
        plan = NotificationPlan(therapy=[_therapy_item()], stock=[_stock_item(n) for n in range(3)])
        requests = build_requests(plan, NOW, cap=3)
        assert len(requests) == 3
        backup = requests[-1]
        assert backup.id == "therapy-backup-t1-100"
        assert backup.category == "therapy"
        assert backup.fire_at == at(20)

    def test_no_backup_when_therapy_fits(self):
        plan = NotificationPlan(therapy=[_therapy_item()], stock=[_stock_item(1)])
        ids = [r.id for r in build_requests(plan, NOW, cap=5)]
        assert ids == ["stock-empty-now-1", "therapy-t1-100"]


class TestScheduler:
    @pytest.fixture(autouse=True)
    def _clean_metrics(self):
        reset_metrics()
        yield
        reset_metrics()

    async def test_second_pass_keeps_everything(self):
        center = InMemoryNotificationCenter()
        scheduler = NotificationScheduler(center, clock=lambda: NOW)
        medicine = stocked(build_medicine(times=("20:00",), units_per_pack=30))

        first = await scheduler.reschedule([medicine])
        assert len(first.added) == 3
        second = await scheduler.reschedule([medicine])
        assert second.added == [] and second.removed == []
        assert sorted(second.kept) == sorted(first.added)
        assert get_metrics()["plans"]["notifications"]["runs"] == 2

    async def test_logged_dose_is_withdrawn(self):
        center = InMemoryNotificationCenter()
        scheduler = NotificationScheduler(center, clock=lambda: NOW)
        medicine = stocked(build_medicine(times=("20:00",), units_per_pack=30))
        await scheduler.reschedule([medicine])
        therapy_id = f"therapy-{medicine.therapies[0].id}-{minute_bucket(at(20))}"
        assert therapy_id in center.pending

        medicine = with_events(medicine, make_event(medicine, "intake", at(19, 50)))
        result = await scheduler.reschedule([medicine])
        assert therapy_id in result.removed
        assert therapy_id not in center.pending

    async def test_unmanaged_requests_are_left_alone(self):
        center = InMemoryNotificationCenter()
        foreign = NotificationRequest(id="critical-dose-reminder-x", fire_at=at(13), title="", body="", category=ALARM_CATEGORY)
        await center.add(foreign)
        await NotificationScheduler(center, clock=lambda: NOW).reschedule([])
        assert "critical-dose-reminder-x" in center.pending

    async def test_switch_to_alarm_replaces_requests(self):
        center = InMemoryNotificationCenter()
        scheduler = NotificationScheduler(center, clock=lambda: NOW)
        medicine = build_medicine(times=("20:00",))
        await scheduler.reschedule([medicine])
        result = await scheduler.reschedule([medicine], Option(therapy_notification_level="alarm"))
        assert len([i for i in result.added if i.startswith("therapy-alarm-")]) == 7
        assert not any(r.category == "therapy" for r in center.pending.values())

    async def test_add_failure_is_skipped(self):
        class _RefusingCenter(InMemoryNotificationCenter):
            async def add(self, request):
                raise NotificationCenterError("not authorized")

        result = await NotificationScheduler(_RefusingCenter(), clock=lambda: NOW).reschedule(
            [build_medicine(times=("20:00",))]
        )
        assert result.added == []

    async def test_nested_call_is_folded_into_a_rerun(self):
        medicine = build_medicine(times=("20:00",))

        class _ReentrantCenter(InMemoryNotificationCenter):
            scheduler = None
            passes = 0

            async def pending_requests(self):
                self.passes += 1
                if self.passes == 1:
                    assert await self.scheduler.reschedule([medicine]) is None
                return await super().pending_requests()

        center = _ReentrantCenter()
        center.scheduler = NotificationScheduler(center, clock=lambda: NOW)
        result = await center.scheduler.reschedule([medicine])
        assert center.passes == 2
        assert result is not None


class TestAlarmActions:
    async def _ring(self, center):
        series = alarm_series(series_id="s1", base=at(20), title="T", body="B", user_info={"type": "therapy"})
        for request in series:
            await center.add(request)
        center.deliver_due(at(20, 2))
        return series

    async def test_stop_clears_series(self):
        center = InMemoryNotificationCenter()
        series = await self._ring(center)
        new = await handle_alarm_action(center, ALARM_STOP_ACTION, series[0], at(20, 2))
        assert new == []
        assert center.pending == {} and center.delivered == {}

    async def test_snooze_schedules_new_series(self):
        center = InMemoryNotificationCenter()
        series = await self._ring(center)
        new = await handle_alarm_action(
            center, ALARM_SNOOZE_ACTION, series[1], at(20, 2), snooze_minutes=15, new_series_id="s2"
        )
        assert len(new) == 7
        assert new[0].fire_at == at(20, 17)
        assert set(center.pending) == set(alarm_request_ids("s2"))
        assert new[0].user_info == {"type": "therapy", ALARM_SERIES_KEY: "s2"}

    def test_invalid_snooze_falls_back_to_default(self):
        assert normalized_snooze_minutes(7) == 10
        assert normalized_snooze_minutes(None) == 10
        assert normalized_snooze_minutes(5) == 5

    async def test_other_categories_are_ignored(self):
        center = InMemoryNotificationCenter()
        request = NotificationRequest(id="stock-low-x", fire_at=NOW, title="", body="", category="stockLow")
        await center.add(request)
        assert await handle_alarm_action(center, ALARM_STOP_ACTION, request, NOW) == []
        assert "stock-low-x" in center.pending

    def test_series_id_from_request_id(self):
        request = NotificationRequest(
            id="therapy-alarm-abc-123-4", fire_at=NOW, title="", body="", category=ALARM_CATEGORY
        )
        assert resolve_series_id(request) == "abc-123"
