"""
Route Traffic Collector

One batch per invocation (cron fires it every few minutes):

1. Schedule  - which routes are inside their collection window right now
2. Directions - fetch traffic-aware durations (+ alternatives) per route
3. Database   - store the measurement, candidates and steps
4. Alerts     - compare against the historical baseline for the slot and
                notify through the route's channels (rate limited per day)

Usage:
    route-collector                          # routes due now
    route-collector --day 1 --time 07:50     # routes due at Monday 07:50
    route-collector --force                  # collect ALL routes now
    route-collector --force --route home_work
    route-collector --test                   # call the API, print, don't save
    route-collector --schedule               # print schedule + cron lines
    route-collector --test-alerts [--route home_work]
    route-collector --reset-db               # drop and recreate all tables
"""

import argparse
import logging
import os
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from alert_ledger import AlertLedger
from alert_manager import AlertManager
from baseline import historical_average
from db import get_db_engine, save_collection
from db_maintenance import initialize_schema, reset_database
from directions_client import DirectionsClient, DirectionsResult, DirectionsTransportError
from notifiers import ChannelDispatcher
from route_config import AppConfig, ConfigError, load_config, parse_clock
from schedule_window import (
    DAY_NAMES, ScheduleContext, active_routes, cron_lines, forced_context, full_schedule,
)

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'
ALERT_LOGGERS = ('alert_manager', 'notifiers', 'smtp_client')

logger = logging.getLogger(__name__)

stats = {
    'routes_attempted': 0,
    'collections_saved': 0,
    'provider_errors': 0,
    'route_errors': 0,
    'alerts_fired': 0,
    'alerts_suppressed': 0,
    'started_at': None,
}

_alerts_handler: Optional[logging.Handler] = None


def setup_logging(log_dir: Path, level: int = logging.INFO) -> None:
    """stdout + collector.log for everything, alerts.log for the alerting modules."""
    global _alerts_handler

    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_dir / 'collector.log', encoding='utf-8'),
        ],
        force=True,
    )

    if _alerts_handler is not None:
        for name in ALERT_LOGGERS:
            logging.getLogger(name).removeHandler(_alerts_handler)
        _alerts_handler.close()

    _alerts_handler = logging.FileHandler(log_dir / 'alerts.log', encoding='utf-8')
    _alerts_handler.setFormatter(formatter)
    for name in ALERT_LOGGERS:
        logging.getLogger(name).addHandler(_alerts_handler)


def reset_stats() -> None:
    for key in stats:
        stats[key] = 0
    stats['started_at'] = datetime.now().isoformat()


def log_stats():
    """Log batch statistics."""
    logger.info("=" * 50)
    logger.info("COLLECTION STATS")
    logger.info(f"  Routes attempted: {stats['routes_attempted']}")
    logger.info(f"  Collections saved: {stats['collections_saved']}")
    logger.info(f"  Provider errors: {stats['provider_errors']}")
    logger.info(f"  Route errors: {stats['route_errors']}")
    logger.info(f"  Alerts fired: {stats['alerts_fired']}")
    logger.info(f"  Alerts suppressed: {stats['alerts_suppressed']}")
    logger.info("=" * 50)


# ---------------------------------------------------------------------------
# Console output
# ---------------------------------------------------------------------------

def _fmt_seconds(seconds: Optional[int]) -> str:
    if seconds is None:
        return "n/a"
    return f"{seconds / 60:.1f} min"


def print_test_result(context: ScheduleContext, result: DirectionsResult) -> None:
    """Dry-run output: one block per candidate."""
    bar = "=" * 44
    print(f"\n{bar}")
    print(f"Route: {context.route.label}")
    print(f"Status: {result.status}")
    print(bar)

    if not result.ok:
        print(f"Error message: {result.error_message or '(none)'}")
        return

    for candidate in result.candidates:
        label = "PRIMARY" if candidate.route_index == 0 else f"ALT {candidate.route_index}"
        print(f"\n{label}: {candidate.summary or '(unnamed)'}")
        print(f"  Distance:         {candidate.distance_text or candidate.distance_meters}")
        print(f"  Duration:         {candidate.duration_text or _fmt_seconds(candidate.duration_seconds)}")
        traffic = candidate.duration_in_traffic_text or (
            _fmt_seconds(candidate.duration_in_traffic_seconds)
        )
        print(f"  Traffic duration: {traffic}")
        print(f"  From: {candidate.start_address or '?'}")
        print(f"  To:   {candidate.end_address or '?'}")
        for warning in candidate.warnings:
            print(f"  ! {warning}")
    print()


def print_schedule(config: AppConfig) -> None:
    print("\n=== Full Collection Schedule ===\n")
    for day, slots in full_schedule(config.routes).items():
        print(f"{DAY_NAMES.get(day, day)}:")
        for slot in slots:
            line = f"  {slot.time} ({slot.mode}) - {slot.label}"
            if slot.mode == "arrive":
                line += f" [collect ~{slot.collect_at}]"
            print(line)
        print()

    print("=== Suggested Cron Lines ===\n")
    command = f"{sys.executable} {Path(__file__).resolve()} --config-dir {config.base_dir}"
    lines = cron_lines(
        config.routes,
        config.window_before_minutes,
        config.window_after_minutes,
        command,
    )
    for i in range(0, len(lines), 2):
        print(lines[i])
        print(lines[i + 1])
        print()


# ---------------------------------------------------------------------------
# Per-route pipeline
# ---------------------------------------------------------------------------

def process_route(context: ScheduleContext, client: DirectionsClient, engine,
                  alerts: Optional[AlertManager], config: AppConfig,
                  test_mode: bool = False) -> Optional[int]:
    """
    fetch -> persist -> baseline -> evaluate.

    Returns the collection id, or None when nothing was stored.
    """
    route = context.route
    stats['routes_attempted'] += 1
    logger.info(
        f"Route {route.id}: {context.mode} {context.scheduled_time} "
        f"(day {context.scheduled_day})"
    )

    try:
        result = client.fetch(route.origin, route.destination, route.travel_mode)
    except DirectionsTransportError as e:
        stats['provider_errors'] += 1
        logger.error(f"Route {route.id}: transport error: {e}")
        if not test_mode and alerts is not None:
            alerts.send_error_alert(route, f"Error calling Google Maps API: {e}")
        return None

    if test_mode:
        print_test_result(context, result)
        return None

    collected_at = datetime.now(config.tz)
    collection_id = save_collection(engine, context, result, collected_at)
    stats['collections_saved'] += 1
    logger.info(f"Route {route.id}: saved collection {collection_id} (status {result.status})")

    if not result.ok:
        stats['provider_errors'] += 1
        detail = f"Google Maps API returned status: {result.status}"
        if result.error_message:
            detail += f" ({result.error_message})"
        logger.warning(f"Route {route.id}: {detail}")
        alerts.send_error_alert(route, detail)
        return collection_id

    primary = result.primary
    if primary is None:
        logger.warning(f"Route {route.id}: OK response without routes")
        return collection_id

    current = primary.effective_duration
    # the measurement just stored counts towards its own baseline
    baseline = historical_average(
        engine, route.id, context.scheduled_day, context.scheduled_time,
        min_samples=config.alert_settings.min_samples_for_alerts,
    )
    best = result.best_alternative()
    logger.info(
        f"Route {route.id}: current {current}s, baseline "
        f"{baseline if baseline is not None else 'n/a'}, "
        f"best alternative {best.effective_duration if best else 'n/a'}"
    )

    suppressed_before = alerts.suppressed
    fired = alerts.evaluate_and_alert(
        route, context, current, baseline, primary,
        best_alt=best,
        best_alt_duration=best.effective_duration if best else None,
    )
    stats['alerts_fired'] += len(fired)
    stats['alerts_suppressed'] += alerts.suppressed - suppressed_before
    return collection_id


def run_batch(contexts, client: DirectionsClient, engine, alerts: Optional[AlertManager],
              config: AppConfig, test_mode: bool = False) -> None:
    """Process routes sequentially; one route's failure never stops the rest."""
    for context in contexts:
        try:
            process_route(context, client, engine, alerts, config, test_mode=test_mode)
        except Exception:
            stats['route_errors'] += 1
            logger.exception(f"Route {context.route.id}: processing failed")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Collect route travel times and send traffic alerts")
    parser.add_argument('--config-dir', type=str,
                        default=os.getenv('ROUTE_TRACKER_CONFIG_DIR', '.'),
                        help='Directory holding config.yaml, routes.yaml, alerts.yaml')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--force', action='store_true', help='Collect all routes now')
    mode.add_argument('--test', action='store_true', help='Call the API and print, no saving')
    mode.add_argument('--schedule', action='store_true', help='Print schedule and cron lines')
    mode.add_argument('--test-alerts', action='store_true', help='Send test alerts')
    mode.add_argument('--reset-db', action='store_true', help='Drop and recreate all tables')
    parser.add_argument('--route', type=str, help='Limit to one route id')
    parser.add_argument('--day', type=int, choices=range(1, 8), help='ISO day override (1=Mon)')
    parser.add_argument('--time', type=str, help='HH:MM override of the current time')
    parser.add_argument('--verbose', action='store_true')
    return parser


def resolve_now(config: AppConfig, day: Optional[int] = None,
                clock: Optional[str] = None) -> datetime:
    now = datetime.now(config.tz)
    if clock:
        hour, minute = (int(part) for part in parse_clock(clock).split(':'))
        now = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if day:
        now = now + timedelta(days=day - now.isoweekday())
    return now


def _open_engine(config: AppConfig):
    engine = get_db_engine(config.database_url, create_tables=False)
    initialize_schema(engine)
    return engine


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config_dir)
    except ConfigError as e:
        logging.basicConfig(format=LOG_FORMAT, datefmt=LOG_DATEFMT)
        logger.error(f"Configuration error: {e}")
        return 1

    setup_logging(config.log_dir, logging.DEBUG if args.verbose else logging.INFO)
    reset_stats()

    if args.schedule:
        print_schedule(config)
        return 0

    routes = list(config.routes)
    if args.route:
        route = config.get_route(args.route)
        if route is None:
            logger.error(f"Unknown route: {args.route}")
            return 1
        routes = [route]

    client = DirectionsClient.from_config(config)
    now = datetime.now(config.tz)

    if args.test:
        if not config.api_key:
            logger.warning("google_maps.api_key is empty; requests will be rejected")
        contexts = [forced_context(route, now) for route in routes]
        run_batch(contexts, client, None, None, config, test_mode=True)
        return 0

    try:
        engine = _open_engine(config)
        if args.reset_db:
            reset_database(engine)
            return 0
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Database error: {e}")
        return 1

    ledger = AlertLedger(engine, max_per_day=config.alert_settings.max_alerts_per_day)
    alerts = AlertManager(config, ChannelDispatcher.from_config(config), ledger)

    if args.test_alerts:
        print("Sending test alerts...\n")
        alerts.send_test(args.route)
        print("\nDone.")
        return 0

    if args.force:
        contexts = [forced_context(route, now) for route in routes]
    else:
        try:
            now = resolve_now(config, args.day, args.time)
        except ConfigError as e:
            logger.error(f"Invalid --time: {e}")
            return 1
        contexts = active_routes(
            routes, now, config.window_before_minutes, config.window_after_minutes
        )
        if not contexts:
            logger.info(f"No routes due at {now.strftime('%a %H:%M')}")
            return 0

    logger.info(f"Processing {len(contexts)} route(s)")
    run_batch(contexts, client, engine, alerts, config)
    log_stats()
    return 0


if __name__ == '__main__':
    sys.exit(main())
