"""
Shared fixtures for collector unit tests.
Uses SQLite in-memory for DB tests (foreign keys on, so cascades work).

The root conftest.py adds collector/ to sys.path so bare imports work.
"""

import json
import pytest
from pathlib import Path

from route_config import (
    AlertSettings, AppConfig, Channel, Route, ScheduleEntry, TelegramSettings,
    ViberSettings, SignalSettings, EmailSettings,
)


@pytest.fixture(autouse=True)
def no_database_url(monkeypatch):
    """Ensure DATABASE_URL is unset so the configured SQLite path is used."""
    monkeypatch.delenv("DATABASE_URL", raising=False)


@pytest.fixture()
def sqlite_engine():
    """In-memory SQLite engine with all collector tables created."""
    from db import get_db_engine
    engine = get_db_engine("sqlite:///:memory:")
    yield engine
    engine.dispose()


@pytest.fixture()
def sqlite_session(sqlite_engine):
    """Bound session against the in-memory SQLite engine."""
    from db import get_session
    session = get_session(sqlite_engine)
    yield session
    session.close()


# ---------------------------------------------------------------------------
# Config builders
# ---------------------------------------------------------------------------

@pytest.fixture()
def make_route():
    def _make(route_id="home_work", depart="08:00", arrive=None, days=(1, 2, 3, 4, 5),
              alerts=(Channel.TELEGRAM,), schedule=None, label=None):
        if schedule is None:
            schedule = (ScheduleEntry(days=tuple(days), depart=depart, arrive=arrive),)
        return Route(
            id=route_id,
            label=label or route_id.replace("_", " ").title(),
            origin="Home St 1, Athens",
            destination="Work Ave 9, Athens",
            schedule=tuple(schedule),
            alerts=tuple(alerts),
        )
    return _make


@pytest.fixture()
def make_config(tmp_path, make_route):
    def _make(routes=None, telegram=True, viber=False, signal=False, email=False,
              **settings):
        if routes is None:
            routes = (make_route(),)
        return AppConfig(
            base_dir=Path(tmp_path),
            api_key="test-key",
            db_path=Path(tmp_path) / "routes.sqlite",
            log_dir=Path(tmp_path) / "logs",
            routes=tuple(routes),
            alert_settings=AlertSettings(**settings),
            email=EmailSettings(enabled=email, method="sendmail", recipients=("me@example.com",),
                                from_address="tracker@example.com"),
            telegram=TelegramSettings(enabled=telegram, bot_token="123:abc", chat_ids=("42",)),
            viber=ViberSettings(enabled=viber, auth_token="vtok", receiver_ids=("r1",)),
            signal=SignalSettings(enabled=signal, sender_number="+300000",
                                  recipient_numbers=("+301111",)),
        )
    return _make


# ---------------------------------------------------------------------------
# Directions payload builders
# ---------------------------------------------------------------------------

def _api_route(summary, duration, traffic=None, steps=2):
    leg = {
        "distance": {"value": 12000, "text": "12 km"},
        "duration": {"value": duration, "text": f"{duration // 60} mins"},
        "start_address": "Home St 1, Athens",
        "end_address": "Work Ave 9, Athens",
        "steps": [
            {
                "html_instructions": f"Turn left onto <b>Road {i}</b>",
                "distance": {"value": 100 * (i + 1)},
                "duration": {"value": 10 * (i + 1)},
                "travel_mode": "DRIVING",
                "start_location": {"lat": 37.9 + i / 100, "lng": 23.7},
                "end_location": {"lat": 37.91 + i / 100, "lng": 23.71},
            }
            for i in range(steps)
        ],
    }
    if traffic is not None:
        leg["duration_in_traffic"] = {"value": traffic, "text": f"{traffic // 60} mins"}
    return {"summary": summary, "legs": [leg], "warnings": []}


@pytest.fixture()
def make_payload():
    """
    Build a Directions API body. `routes` is a list of
    (summary, duration, traffic) tuples; returns the JSON text.
    """
    def _make(routes=(("Kifisias Ave", 1500, 1800),), status="OK", error_message=None, steps=2):
        data = {"status": status, "routes": []}
        if status == "OK":
            data["routes"] = [_api_route(s, d, t, steps=steps) for s, d, t in routes]
        if error_message:
            data["error_message"] = error_message
        return json.dumps(data)
    return _make
