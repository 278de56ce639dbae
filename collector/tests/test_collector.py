"""
Unit tests for collector.py: per-route pipeline, batch isolation and the CLI.

The Directions client is mocked; persistence uses SQLite (in-memory for the
pipeline tests, a temp file for the CLI tests).
"""

import logging
import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

import collector
from collector import main, process_route, run_batch, stats
from db import save_collection
from directions_client import DirectionsTransportError, parse_response
from schedule_window import ScheduleContext


@pytest.fixture(autouse=True)
def fresh_stats():
    collector.reset_stats()
    yield


@pytest.fixture()
def no_logging_setup():
    """main() reconfigures the root logger; keep pytest's handlers in place."""
    with patch("collector.setup_logging") as setup:
        yield setup


def _context(route, day=1, time="08:00"):
    return ScheduleContext(route=route, mode="depart", scheduled_time=time,
                           collect_at=time, scheduled_day=day)


def _alerts():
    alerts = MagicMock()
    alerts.suppressed = 0
    alerts.evaluate_and_alert.return_value = []
    return alerts


def _client(raw=None, error=None):
    client = MagicMock()
    if error is not None:
        client.fetch.side_effect = error
    else:
        client.fetch.return_value = parse_response(raw)
    return client


def _count(engine, table):
    with engine.connect() as conn:
        return conn.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar()


# ---------------------------------------------------------------------------
# process_route
# ---------------------------------------------------------------------------

class TestProcessRoute:
    def test_transport_error_alerts_and_skips_persistence(self, sqlite_engine, make_route, make_config):
        route = make_route()
        alerts = _alerts()
        client = _client(error=DirectionsTransportError("timed out"))

        result = process_route(_context(route), client, sqlite_engine, alerts, make_config())

        assert result is None
        assert _count(sqlite_engine, "collections") == 0
        alerts.send_error_alert.assert_called_once()
        assert "timed out" in alerts.send_error_alert.call_args[0][1]
        assert stats["provider_errors"] == 1

    def test_application_error_persisted_then_alerted(self, sqlite_engine, make_route,
                                                     make_config, make_payload):
        route = make_route()
        alerts = _alerts()
        raw = make_payload(status="REQUEST_DENIED", error_message="bad key")

        collection_id = process_route(_context(route), _client(raw), sqlite_engine, alerts, make_config())

        assert collection_id is not None
        assert _count(sqlite_engine, "collections") == 1
        assert _count(sqlite_engine, "routes") == 0
        alerts.send_error_alert.assert_called_once_with(route, "Google Maps API returned status: REQUEST_DENIED (bad key)")
        alerts.evaluate_and_alert.assert_not_called()

    def test_ok_evaluates_with_baseline_and_best_alternative(self, sqlite_engine, make_route,
                                                            make_config, make_payload):
        route = make_route()
        config = make_config(min_samples_for_alerts=3)
        history = parse_response(make_payload(routes=[("Main", 600, 600)]))
        for _ in range(2):
            save_collection(sqlite_engine, _context(route), history,
                            datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc))

        raw = make_payload(routes=[("Main", 900, 1000), ("Alt A", 800, 850), ("Alt B", 700, None)])
        alerts = _alerts()
        alerts.evaluate_and_alert.return_value = ["heavy_traffic"]

        process_route(_context(route), _client(raw), sqlite_engine, alerts, config)

        args, kwargs = alerts.evaluate_and_alert.call_args
        assert args[0] is route
        assert args[2] == 1000        # current effective duration
        assert args[3] == 733         # (600 + 600 + 1000) / 3
        assert args[4].summary == "Main"
        assert kwargs["best_alt"].summary == "Alt B"
        assert kwargs["best_alt_duration"] == 700
        assert stats["alerts_fired"] == 1
        assert stats["collections_saved"] == 1

    def test_baseline_none_with_too_few_samples(self, sqlite_engine, make_route,
                                                make_config, make_payload):
        alerts = _alerts()
        process_route(_context(make_route()), _client(make_payload()), sqlite_engine,
                      alerts, make_config())
        assert alerts.evaluate_and_alert.call_args[0][3] is None

    def test_test_mode_prints_and_stores_nothing(self, make_route, make_config,
                                                 make_payload, capsys):
        raw = make_payload(routes=[("Main", 900, None), ("Alt", 800, 850)])
        result = process_route(_context(make_route()), _client(raw), None, None,
                               make_config(), test_mode=True)
        out = capsys.readouterr().out
        assert result is None
        assert "Status: OK" in out
        assert "PRIMARY: Main" in out
        assert "ALT 1: Alt" in out
        assert "Traffic duration: n/a" in out

    def test_test_mode_transport_error_sends_nothing(self, make_route, make_config):
        client = _client(error=DirectionsTransportError("down"))
        assert process_route(_context(make_route()), client, None, None,
                             make_config(), test_mode=True) is None


class TestRunBatch:
    def test_failure_does_not_stop_batch(self, sqlite_engine, make_route, make_config, make_payload):
        first, second = make_route("first"), make_route("second")
        client = MagicMock()
        client.fetch.side_effect = [RuntimeError("boom"), parse_response(make_payload())]
        alerts = _alerts()

        run_batch([_context(first), _context(second)], client, sqlite_engine, alerts, make_config())

        assert client.fetch.call_count == 2
        assert stats["route_errors"] == 1
        assert stats["collections_saved"] == 1


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

CONFIG_YAML = """
google_maps:
  api_key: test-key
timezone: Europe/Athens
database:
  path: data/routes.sqlite
log_dir: logs
"""

ROUTES_YAML = """
routes:
  - id: home_work
    label: Home to Work
    origin: Home St 1
    destination: Work Ave 9
    schedule:
      - days: Weekdays
        depart: "08:00"
      - days: Sat
        arrive: "10:00"
    alerts: [telegram]
  - id: gym
    origin: Work Ave 9
    destination: Gym Rd 3
    schedule:
      - days: Mon,Wed
        depart: "18:30"
"""

ALERTS_YAML = """
telegram:
  enabled: false
"""


@pytest.fixture()
def config_dir(tmp_path):
    (tmp_path / "config.yaml").write_text(CONFIG_YAML, encoding="utf-8")
    (tmp_path / "routes.yaml").write_text(ROUTES_YAML, encoding="utf-8")
    (tmp_path / "alerts.yaml").write_text(ALERTS_YAML, encoding="utf-8")
    return tmp_path


@pytest.fixture()
def fetch(make_payload):
    with patch("collector.DirectionsClient.fetch",
               return_value=parse_response(make_payload())) as mock_fetch:
        yield mock_fetch


def _db_count(config_dir, table):
    engine = create_engine(f"sqlite:///{config_dir / 'data' / 'routes.sqlite'}")
    try:
        return _count(engine, table)
    finally:
        engine.dispose()


class TestMain:
    def test_config_error_exits_1(self, tmp_path, no_logging_setup):
        assert main(["--config-dir", str(tmp_path)]) == 1

    def test_unknown_route_exits_1(self, config_dir, no_logging_setup, fetch):
        assert main(["--config-dir", str(config_dir), "--force", "--route", "nope"]) == 1
        fetch.assert_not_called()

    def test_nothing_due_exits_0(self, config_dir, no_logging_setup, fetch):
        assert main(["--config-dir", str(config_dir), "--day", "7", "--time", "03:00"]) == 0
        fetch.assert_not_called()

    def test_scheduled_run_collects_due_routes(self, config_dir, no_logging_setup, fetch):
        assert main(["--config-dir", str(config_dir), "--day", "1", "--time", "07:50"]) == 0
        assert fetch.call_count == 1
        assert fetch.call_args[0] == ("Home St 1", "Work Ave 9", "driving")
        assert _db_count(config_dir, "collections") == 1

    def test_scheduled_arrive_entry(self, config_dir, no_logging_setup, fetch):
        # Saturday arrive 10:00 -> collect 09:15
        assert main(["--config-dir", str(config_dir), "--day", "6", "--time", "09:10"]) == 0
        assert fetch.call_count == 1

    def test_force_all(self, config_dir, no_logging_setup, fetch):
        assert main(["--config-dir", str(config_dir), "--force"]) == 0
        assert fetch.call_count == 2
        assert _db_count(config_dir, "collections") == 2

    def test_force_one_route(self, config_dir, no_logging_setup, fetch):
        assert main(["--config-dir", str(config_dir), "--force", "--route", "gym"]) == 0
        assert fetch.call_args[0][0] == "Work Ave 9"

    def test_test_mode_creates_no_database(self, config_dir, no_logging_setup, fetch, capsys):
        assert main(["--config-dir", str(config_dir), "--test", "--route", "home_work"]) == 0
        assert "Route: Home to Work" in capsys.readouterr().out
        assert not (config_dir / "data" / "routes.sqlite").exists()

    def test_schedule_prints_days_and_cron(self, config_dir, no_logging_setup, fetch, capsys):
        assert main(["--config-dir", str(config_dir), "--schedule"]) == 0
        out = capsys.readouterr().out
        assert "Monday:" in out
        assert "10:00 (arrive) - Home to Work [collect ~09:15]" in out
        assert "# Home to Work" in out
        assert "45,50,55 7 * * 1,2,3,4,5" in out
        fetch.assert_not_called()

    def test_test_alerts(self, config_dir, no_logging_setup, capsys):
        assert main(["--config-dir", str(config_dir), "--test-alerts"]) == 0
        assert "Route home_work: no enabled alert channels" in capsys.readouterr().out

    def test_reset_db(self, config_dir, no_logging_setup, fetch):
        main(["--config-dir", str(config_dir), "--force"])
        assert main(["--config-dir", str(config_dir), "--reset-db"]) == 0
        assert _db_count(config_dir, "collections") == 0

    def test_database_failure_exits_1(self, config_dir, no_logging_setup, fetch):
        with patch("collector.get_db_engine", side_effect=SQLAlchemyError("locked")):
            assert main(["--config-dir", str(config_dir), "--force"]) == 1
        fetch.assert_not_called()

    def test_invalid_time_exits_1(self, config_dir, no_logging_setup, fetch):
        assert main(["--config-dir", str(config_dir), "--time", "25:00"]) == 1


class TestSetupLogging:
    def test_writes_collector_and_alert_logs(self, tmp_path):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            collector.setup_logging(tmp_path / "logs")
            logging.getLogger("notifiers").info("Alert [telegram] route=r1 status=OK")
            logging.getLogger("collector").info("batch done")
            for handler in logging.getLogger().handlers:
                handler.flush()
            collector._alerts_handler.flush()
        finally:
            for handler in root.handlers[:]:
                root.removeHandler(handler)
                handler.close()
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)
            for name in collector.ALERT_LOGGERS:
                logging.getLogger(name).removeHandler(collector._alerts_handler)
            collector._alerts_handler.close()
            collector._alerts_handler = None

        main_log = (tmp_path / "logs" / "collector.log").read_text(encoding="utf-8")
        alert_log = (tmp_path / "logs" / "alerts.log").read_text(encoding="utf-8")
        assert "batch done" in main_log
        assert "route=r1 status=OK" in main_log
        assert "route=r1 status=OK" in alert_log
        assert "batch done" not in alert_log
        assert " | INFO | " in alert_log
