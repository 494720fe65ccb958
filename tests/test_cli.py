"""Tests for the pharma-engine command line interface."""

import json
from uuid import uuid4

import pytest
from click.testing import CliRunner

from builders import MemoryLedger
from pharma_engine import cli
from pharma_engine.actions import LedgerActions

MED, PKG, THERAPY = uuid4(), uuid4(), uuid4()

SNAPSHOT = {
    "medicines": [
        {
            "id": str(MED),
            "name": "Tachipirina",
            "packages": [{"id": str(PKG), "unitsPerPack": 20, "kind": "compresse"}],
            "therapies": [
                {
                    "id": str(THERAPY),
                    "packageId": str(PKG),
                    "rrule": "RRULE:FREQ=DAILY",
                    "doses": [{"time": "12:05"}],
                    "startDate": "2026-03-01T00:00:00Z",
                }
            ],
            "events": [],
        }
    ]
}


@pytest.fixture(autouse=True)
def _quiet(monkeypatch):
    """Keep the runner's output pure JSON; leave root handlers untouched."""
    monkeypatch.setattr(cli, "setup_logging", lambda *args, **kwargs: None)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("PHARMA_TIMEZONE", raising=False)
    monkeypatch.delenv("PHARMA_STOCK_THRESHOLD_DAYS", raising=False)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def snapshot_file(tmp_path):
    path = tmp_path / "snapshot.json"
    path.write_text(json.dumps(SNAPSHOT))
    return path


class TestRuleCommands:
    def test_parse(self, runner):
        result = runner.invoke(cli.main, ["rule", "parse", "RRULE:FREQ=WEEKLY;BYDAY=MO,FR"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["freq"] == "WEEKLY"
        assert data["by_day"] == ["MO", "FR"]

    def test_parse_with_escaped_newline(self, runner):
        result = runner.invoke(
            cli.main, ["rule", "parse", "RRULE:FREQ=DAILY\\nEXDATE:20260305T080000Z"]
        )
        assert json.loads(result.output)["exdates"] == ["2026-03-05T08:00:00+00:00"]

    def test_encode(self, runner):
        result = runner.invoke(
            cli.main,
            ["rule", "encode", "--freq", "DAILY", "--cycle-on", "7", "--cycle-off", "21"],
        )
        assert result.exit_code == 0
        assert result.output.strip() == "RRULE:FREQ=DAILY;X-APP-ON=7;X-APP-OFF=21"

    def test_describe(self, runner):
        result = runner.invoke(cli.main, ["rule", "describe", "RRULE:FREQ=DAILY;INTERVAL=2"])
        assert result.output.strip() == "ogni 2 giorni"

    def test_next_occurrence(self, runner):
        result = runner.invoke(
            cli.main,
            [
                "next-occurrence",
                "--rule", "RRULE:FREQ=DAILY",
                "--start", "2026-03-01T00:00:00Z",
                "--after", "2026-03-10T12:00:00Z",
                "--dose", "08:00",
                "--dose", "20:00=0.5",
            ],
        )
        assert result.exit_code == 0
        assert json.loads(result.output) == {"next_occurrence": "2026-03-10T20:00:00+00:00"}

    def test_bad_dose(self, runner):
        result = runner.invoke(
            cli.main,
            ["next-occurrence", "--rule", "RRULE:FREQ=DAILY", "--start", "2026-03-01", "--after", "2026-03-02", "--dose", "noon"],
        )
        assert result.exit_code != 0


class TestPlannerCommands:
    def test_today(self, runner, snapshot_file):
        result = runner.invoke(cli.main, ["today", str(snapshot_file), "--now", "2026-03-10T12:00:00Z"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert [i["category"] for i in data["therapy_items"]] == ["therapy"]
        assert data["sync_token"]

    def test_stock_threshold_from_env(self, runner, tmp_path, monkeypatch):
        doc = json.loads(json.dumps(SNAPSHOT))
        medicine = doc["medicines"][0]
        medicine["packages"][0]["unitsPerPack"] = 10
        medicine["events"] = [
            {"operationId": str(uuid4()), "kind": "purchase", "timestamp": "2026-03-10T11:00:00Z", "packageId": str(PKG)}
        ]
        path = tmp_path / "stocked.json"
        path.write_text(json.dumps(doc))
        args = ["today", str(path), "--now", "2026-03-10T12:00:00Z"]

        # Ten days of cover: fine for the default week, short of a month.
        assert json.loads(runner.invoke(cli.main, args).output)["purchase_items"] == []
        monkeypatch.setenv("PHARMA_STOCK_THRESHOLD_DAYS", "30")
        [item] = json.loads(runner.invoke(cli.main, args).output)["purchase_items"]
        assert item["medicine_id"] == str(MED)

    def test_notifications_alarm(self, runner, snapshot_file):
        result = runner.invoke(
            cli.main,
            ["notifications", str(snapshot_file), "--now", "2026-03-10T12:00:00Z", "--level", "alarm"],
        )
        assert result.exit_code == 0
        requests = json.loads(result.output)
        alarms = [r for r in requests if r["category"] == "therapy_alarm"]
        assert len(alarms) == 7

    def test_live_plan(self, runner, snapshot_file):
        result = runner.invoke(cli.main, ["live-plan", str(snapshot_file), "--now", "2026-03-10T12:00:00Z"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["aggregate"]["primary"]["medicine_name"] == "Tachipirina"
        assert data["aggregate"]["subtitle_display"] == "Tachipirina · 1 compressa"

    def test_invalid_snapshot(self, runner, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text('{"medicines": [{"id": "nope"}]}')
        result = runner.invoke(cli.main, ["today", str(path)])
        assert result.exit_code == 1
        assert "invalid snapshot" in result.output

    def test_bad_timestamp(self, runner, snapshot_file):
        result = runner.invoke(cli.main, ["today", str(snapshot_file), "--now", "yesterday"])
        assert result.exit_code == 2


class TestLedgerCommands:
    @pytest.fixture
    def ledger(self, monkeypatch):
        ledger = MemoryLedger()

        async def _with_actions(config, fn):
            return await fn(LedgerActions(ledger))

        monkeypatch.setattr(cli, "_with_actions", _with_actions)
        return ledger

    def test_record_intake_is_idempotent(self, runner, ledger):
        op = str(uuid4())
        args = ["record-intake", "--operation-id", op, "--medicine-id", str(MED), "--package-id", str(PKG)]
        first = runner.invoke(cli.main, args)
        second = runner.invoke(cli.main, args)
        assert json.loads(first.output)["status"] == "created"
        assert json.loads(second.output)["status"] == "duplicate"
        assert len(ledger.events) == 1

    def test_record_purchase_then_undo(self, runner, ledger):
        op = str(uuid4())
        runner.invoke(
            cli.main,
            ["record-purchase", "--operation-id", op, "--medicine-id", str(MED), "--package-id", str(PKG), "--units-per-pack", "20"],
        )
        result = runner.invoke(cli.main, ["undo", op])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["event"]["kind"] == "purchase_undo"
        assert data["event"]["stock_delta"] == -20

    def test_undo_unknown_is_noop(self, runner, ledger):
        result = runner.invoke(cli.main, ["undo", str(uuid4())])
        assert result.exit_code == 1
        assert json.loads(result.output) == {"status": "noop"}

    def test_invalid_quantity(self, runner, ledger):
        result = runner.invoke(
            cli.main, ["record-intake", "--medicine-id", str(MED), "--quantity", "0"]
        )
        assert result.exit_code == 1
        assert json.loads(result.output)["code"] == "invalid_input"

    def test_missing_database_url(self, runner):
        result = runner.invoke(cli.main, ["record-intake", "--medicine-id", str(MED)])
        assert result.exit_code == 1
        assert "DATABASE_URL must be set" in result.output
