"""
Route Collector Configuration

Loads the three YAML files that describe a deployment:

  config.yaml  — provider key, locale, timezone, database, collection window
  routes.yaml  — monitored routes and their schedules
  alerts.yaml  — alert thresholds and per-channel settings

Secrets can be kept out of YAML: a `.env` file next to the YAML files is
loaded with python-dotenv, and any value written as ${NAME} is replaced by
the environment variable NAME.

The result is an immutable AppConfig that is built once per process and
handed to every component.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

CONFIG_FILES = ("config.yaml", "routes.yaml", "alerts.yaml")

# ISO day numbers (1=Mon .. 7=Sun)
DAY_MAP = {
    "mon": 1, "tue": 2, "wed": 3,
    "thu": 4, "fri": 5, "sat": 6, "sun": 7,
}
WEEKDAYS = (1, 2, 3, 4, 5)
WEEKENDS = (6, 7)
ALL_DAYS = (1, 2, 3, 4, 5, 6, 7)

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")
_CLOCK_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


class ConfigError(Exception):
    """Missing or invalid configuration. Fatal for the whole run."""


class Channel(str, Enum):
    """Alert transports a route can subscribe to."""
    EMAIL = "email"
    TELEGRAM = "telegram"
    VIBER = "viber"
    SIGNAL = "signal"


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def parse_days(days: Any) -> Tuple[int, ...]:
    """
    Parse a day specifier into sorted ISO day numbers.

    Accepts "Mon", "Mon,Wed,Fri", "Weekdays", "Weekends", "All",
    or a list mixing day names and ISO integers.
    """
    if days is None:
        return ()

    if isinstance(days, str):
        lower = days.strip().lower()
        if lower == "weekdays":
            return WEEKDAYS
        if lower == "weekends":
            return WEEKENDS
        if lower == "all":
            return ALL_DAYS
        parts = days.split(",")
    elif isinstance(days, (list, tuple)):
        parts = list(days)
    else:
        parts = [days]

    result = set()
    for part in parts:
        if isinstance(part, int) and not isinstance(part, bool):
            if 1 <= part <= 7:
                result.add(part)
            else:
                logger.warning(f"Ignoring day number out of range: {part}")
            continue
        token = str(part).strip().lower()
        if token in ("weekdays", "weekends", "all"):
            result.update(parse_days(token))
            continue
        short = token[:3]
        if short in DAY_MAP:
            result.add(DAY_MAP[short])
        elif token:
            logger.warning(f"Ignoring unknown day token: {part!r}")
    return tuple(sorted(result))


def parse_clock(value: Any) -> str:
    """
    Normalize a wall-clock time to "HH:MM".

    YAML 1.1 reads unquoted 17:30 as the sexagesimal integer 1050, which is
    exactly the minute of the day, so integers are accepted as minutes.
    """
    if isinstance(value, bool):
        raise ConfigError(f"Invalid clock time: {value!r}")
    if isinstance(value, int):
        minutes = value
    else:
        match = _CLOCK_PATTERN.match(str(value).strip())
        if not match:
            raise ConfigError(f"Invalid clock time: {value!r} (expected HH:MM)")
        hours, mins = int(match.group(1)), int(match.group(2))
        if hours > 23 or mins > 59:
            raise ConfigError(f"Invalid clock time: {value!r}")
        minutes = hours * 60 + mins

    if not 0 <= minutes < 24 * 60:
        raise ConfigError(f"Invalid clock time: {value!r}")
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def clock_to_minutes(clock: str) -> int:
    hours, mins = clock.split(":")
    return int(hours) * 60 + int(mins)


def _resolve_env(value: Any) -> Any:
    """Recursively replace ${NAME} placeholders with environment values."""
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda m: os.getenv(m.group(1), ""), value)
    if isinstance(value, list):
        return [_resolve_env(v) for v in value]
    if isinstance(value, dict):
        return {k: _resolve_env(v) for k, v in value.items()}
    return value


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


# ---------------------------------------------------------------------------
# Config objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScheduleEntry:
    """One recurrence rule: a day set plus a depart-at or arrive-by time."""
    days: Tuple[int, ...]
    depart: Optional[str] = None
    arrive: Optional[str] = None

    @property
    def mode(self) -> Optional[str]:
        if self.depart is not None:
            return "depart"
        if self.arrive is not None:
            return "arrive"
        return None

    @property
    def time(self) -> Optional[str]:
        """Nominal schedule time; this is the baseline slot label."""
        return self.depart if self.depart is not None else self.arrive

    @property
    def is_inert(self) -> bool:
        return self.mode is None


@dataclass(frozen=True)
class Route:
    """A monitored origin/destination pair."""
    id: str
    label: str
    origin: str
    destination: str
    travel_mode: str = "driving"
    schedule: Tuple[ScheduleEntry, ...] = ()
    alerts: Tuple[Channel, ...] = ()


@dataclass(frozen=True)
class AlertSettings:
    traffic_threshold_percent: float = 30
    min_samples_for_alerts: int = 5
    max_alerts_per_day: int = 3


@dataclass(frozen=True)
class EmailSettings:
    enabled: bool = False
    method: str = "smtp"
    recipients: Tuple[str, ...] = ()
    from_address: str = ""
    from_name: str = "Route Tracker"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_encryption: str = "tls"
    smtp_username: str = ""
    smtp_password: str = ""
    sendmail_path: str = "/usr/sbin/sendmail"


@dataclass(frozen=True)
class TelegramSettings:
    enabled: bool = False
    bot_token: str = ""
    chat_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ViberSettings:
    enabled: bool = False
    auth_token: str = ""
    receiver_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SignalSettings:
    enabled: bool = False
    api_url: str = "http://localhost:8080"
    sender_number: str = ""
    recipient_numbers: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AppConfig:
    """Immutable, load-once configuration shared by all components."""
    base_dir: Path
    api_key: str = ""
    language: str = "el"
    region: str = "gr"
    timezone: str = "Europe/Athens"
    db_path: Path = Path("data/routes.sqlite")
    log_dir: Path = Path("data")
    window_before_minutes: int = 15
    window_after_minutes: int = 5
    request_alternatives: bool = True
    routes: Tuple[Route, ...] = ()
    alert_settings: AlertSettings = field(default_factory=AlertSettings)
    email: EmailSettings = field(default_factory=EmailSettings)
    telegram: TelegramSettings = field(default_factory=TelegramSettings)
    viber: ViberSettings = field(default_factory=ViberSettings)
    signal: SignalSettings = field(default_factory=SignalSettings)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def database_url(self) -> str:
        """DATABASE_URL wins over the configured SQLite file."""
        return os.getenv("DATABASE_URL") or f"sqlite:///{self.db_path}"

    def get_route(self, route_id: str) -> Optional[Route]:
        for route in self.routes:
            if route.id == route_id:
                return route
        return None

    def channel_enabled(self, channel: Channel) -> bool:
        settings = {
            Channel.EMAIL: self.email,
            Channel.TELEGRAM: self.telegram,
            Channel.VIBER: self.viber,
            Channel.SIGNAL: self.signal,
        }[channel]
        return settings.enabled

    def route_channels(self, route: Route) -> List[Channel]:
        """The route's subscribed channels that are enabled in alerts.yaml."""
        return [ch for ch in route.alerts if self.channel_enabled(ch)]


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML: {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at the top of {path}")
    return _resolve_env(data)


def _resolve_path(base_dir: Path, value: str) -> Path:
    path = Path(value)
    return path if path.is_absolute() else base_dir / path


def _parse_schedule_entry(route_id: str, raw: Dict[str, Any]) -> ScheduleEntry:
    if not isinstance(raw, dict):
        raise ConfigError(f"Route {route_id}: schedule entries must be mappings")
    depart = raw.get("depart")
    arrive = raw.get("arrive")
    if depart is not None and arrive is not None:
        raise ConfigError(
            f"Route {route_id}: schedule entry sets both depart and arrive"
        )
    entry = ScheduleEntry(
        days=parse_days(raw.get("days")),
        depart=parse_clock(depart) if depart is not None else None,
        arrive=parse_clock(arrive) if arrive is not None else None,
    )
    if entry.is_inert:
        logger.warning(f"Route {route_id}: schedule entry without depart/arrive is ignored")
    return entry


def _parse_route(raw: Dict[str, Any]) -> Route:
    if not isinstance(raw, dict):
        raise ConfigError("Each route must be a mapping")
    route_id = raw.get("id")
    if not route_id:
        raise ConfigError("Route without an id")
    route_id = str(route_id)
    for key in ("origin", "destination"):
        if not raw.get(key):
            raise ConfigError(f"Route {route_id}: missing {key}")

    channels = []
    for name in _as_list(raw.get("alerts")):
        try:
            channel = Channel(str(name).strip().lower())
        except ValueError:
            raise ConfigError(f"Route {route_id}: unknown alert channel {name!r}") from None
        if channel not in channels:
            channels.append(channel)

    return Route(
        id=route_id,
        label=str(raw.get("label") or route_id),
        origin=str(raw["origin"]),
        destination=str(raw["destination"]),
        travel_mode=str(raw.get("travel_mode") or "driving"),
        schedule=tuple(
            _parse_schedule_entry(route_id, s) for s in _as_list(raw.get("schedule"))
        ),
        alerts=tuple(channels),
    )


def _strings(value: Any) -> Tuple[str, ...]:
    return tuple(str(v) for v in _as_list(value) if v not in (None, ""))


def _parse_alerts(alerts: Dict[str, Any]) -> Dict[str, Any]:
    settings = alerts.get("alert_settings") or {}
    email = alerts.get("email") or {}
    telegram = alerts.get("telegram") or {}
    viber = alerts.get("viber") or {}
    signal = alerts.get("signal") or {}

    try:
        return {
            "alert_settings": AlertSettings(
                traffic_threshold_percent=float(settings.get("traffic_threshold_percent", 30)),
                min_samples_for_alerts=int(settings.get("min_samples_for_alerts", 5)),
                max_alerts_per_day=int(settings.get("max_alerts_per_day", 3)),
            ),
            "email": EmailSettings(
                enabled=_as_bool(email.get("enabled")),
                method=str(email.get("method") or "smtp"),
                recipients=_strings(email.get("recipients")),
                from_address=str(email.get("from_address") or email.get("smtp_username") or ""),
                from_name=str(email.get("from_name") or "Route Tracker"),
                smtp_host=str(email.get("smtp_host") or ""),
                smtp_port=int(email.get("smtp_port") or 587),
                smtp_encryption=str(email.get("smtp_encryption") or "tls").lower(),
                smtp_username=str(email.get("smtp_username") or ""),
                smtp_password=str(email.get("smtp_password") or ""),
                sendmail_path=str(email.get("sendmail_path") or "/usr/sbin/sendmail"),
            ),
            "telegram": TelegramSettings(
                enabled=_as_bool(telegram.get("enabled")),
                bot_token=str(telegram.get("bot_token") or ""),
                chat_ids=_strings(telegram.get("chat_ids")),
            ),
            "viber": ViberSettings(
                enabled=_as_bool(viber.get("enabled")),
                auth_token=str(viber.get("auth_token") or ""),
                receiver_ids=_strings(viber.get("receiver_ids")),
            ),
            "signal": SignalSettings(
                enabled=_as_bool(signal.get("enabled")),
                api_url=str(signal.get("api_url") or "http://localhost:8080").rstrip("/"),
                sender_number=str(signal.get("sender_number") or ""),
                recipient_numbers=_strings(signal.get("recipient_numbers")),
            ),
        }
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid alerts.yaml value: {e}") from e


def load_config(base_dir) -> AppConfig:
    """Load and validate the configuration directory. Raises ConfigError."""
    base_dir = Path(base_dir).resolve()
    if not base_dir.is_dir():
        raise ConfigError(f"Configuration directory not found: {base_dir}")

    load_dotenv(base_dir / ".env")

    config, routes, alerts = (_read_yaml(base_dir / name) for name in CONFIG_FILES)

    google = config.get("google_maps") or {}
    database = config.get("database") or {}
    collection = config.get("collection") or {}

    parsed_routes = tuple(_parse_route(r) for r in _as_list(routes.get("routes")))
    seen = set()
    for route in parsed_routes:
        if route.id in seen:
            raise ConfigError(f"Duplicate route id: {route.id}")
        seen.add(route.id)

    try:
        before = int(collection.get("window_before_minutes", 15))
        after = int(collection.get("window_after_minutes", 5))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid collection window: {e}") from e
    if before < 0 or after < 0:
        raise ConfigError("Collection window margins must not be negative")

    timezone = str(config.get("timezone") or "Europe/Athens")
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(f"Unknown timezone: {timezone}") from e

    return AppConfig(
        base_dir=base_dir,
        api_key=str(google.get("api_key") or ""),
        language=str(google.get("language") or "el"),
        region=str(google.get("region") or "gr"),
        timezone=timezone,
        db_path=_resolve_path(base_dir, str(database.get("path") or "data/routes.sqlite")),
        log_dir=_resolve_path(base_dir, str(config.get("log_dir") or "data")),
        window_before_minutes=before,
        window_after_minutes=after,
        request_alternatives=_as_bool(collection.get("request_alternatives"), default=True),
        routes=parsed_routes,
        **_parse_alerts(alerts),
    )
