"""
Alert Manager

Decides whether a fresh measurement is worth telling the user about and
hands the message to the channel dispatcher.

Rules (each independently rate limited through the shared daily ledger):
  1. Heavy traffic  - current > baseline * (1 + threshold%)
  2. Better route   - an alternative saves more than MIN_SAVINGS_SECONDS

Error alerts and test alerts bypass the limiter.
"""

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, List, Optional

from alert_ledger import AlertLedger
from directions_client import PathCandidate
from notifiers import ChannelDispatcher
from route_config import AppConfig, Route
from schedule_window import ScheduleContext

logger = logging.getLogger(__name__)

MIN_SAVINGS_SECONDS = 120

HEAVY_TRAFFIC = "heavy_traffic"
BETTER_ROUTE = "better_route"

HEAVY_TRAFFIC_SUBJECT = "🚗🔴 Heavy Traffic Alert"
BETTER_ROUTE_SUBJECT = "🚗💡 Better Route Found"
ERROR_SUBJECT = "⚠️ Route Tracker Error"
TEST_SUBJECT = "🧪 Route Tracker Test"


def round_half_up(value: float, digits: int = 0) -> float:
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def _minutes(seconds: int) -> str:
    return f"{round_half_up(seconds / 60, 1):g}"


def is_heavy_traffic(current: int, baseline: Optional[int], threshold_percent: float) -> bool:
    """Strictly above baseline plus threshold; an unknown or zero baseline never fires."""
    if baseline is None or baseline <= 0:
        return False
    limit = Decimal(baseline) * (100 + Decimal(str(threshold_percent))) / 100
    return Decimal(current) > limit


def saves_enough(current: int, alternative: Optional[int]) -> bool:
    if alternative is None:
        return False
    return current - alternative > MIN_SAVINGS_SECONDS


# ---------------------------------------------------------------------------
# Message builders
# ---------------------------------------------------------------------------

def heavy_traffic_message(route: Route, context: ScheduleContext, current: int,
                          baseline: int, now: datetime) -> str:
    pct = int(round_half_up((current - baseline) / baseline * 100))
    return (
        "🚗🔴 Heavy Traffic Alert!\n\n"
        f"Route: {route.label}\n"
        f"Scheduled: {context.mode} {context.scheduled_time}\n"
        f"Current: {_minutes(current)} min (+{pct}% above normal)\n"
        f"Average: {_minutes(baseline)} min\n"
        f"Time: {now.strftime('%H:%M')}\n\n"
        "Consider leaving earlier or using an alternative route."
    )


def better_route_message(route: Route, current: int, primary: Optional[PathCandidate],
                         alternative_duration: int, alternative: Optional[PathCandidate],
                         now: datetime) -> str:
    current_name = (primary.summary if primary else "") or "current route"
    alt_name = (alternative.summary if alternative else "") or "alternative"
    return (
        "🚗💡 Better Route Found!\n\n"
        f"Route: {route.label}\n"
        f"Current route ({current_name}): {_minutes(current)} min\n"
        f"Better route ({alt_name}): {_minutes(alternative_duration)} min\n"
        f"Savings: {_minutes(current - alternative_duration)} min\n"
        f"Time: {now.strftime('%H:%M')}"
    )


def error_message(route: Route, detail: str, now: datetime) -> str:
    return (
        "⚠️ Route Tracker Error\n\n"
        f"Route: {route.label}\n"
        f"Error: {detail}\n"
        f"Time: {now.strftime('%Y-%m-%d %H:%M:%S')}"
    )


def test_message(route: Route, channel_names: List[str], now: datetime) -> str:
    return (
        "🧪 Test Alert\n\n"
        f"Route: {route.label}\n"
        f"Channels: {', '.join(channel_names)}\n"
        f"Time: {now.strftime('%Y-%m-%d %H:%M:%S')}\n\n"
        "If you receive this, alerts are working correctly."
    )


class AlertManager:
    """Evaluates alert rules for one measurement at a time."""

    def __init__(self, config: AppConfig, dispatcher: ChannelDispatcher,
                 ledger: AlertLedger, clock: Optional[Callable[[], datetime]] = None):
        self.config = config
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.clock = clock or (lambda: datetime.now(config.tz))
        self.suppressed = 0

    def evaluate_and_alert(self, route: Route, context: ScheduleContext,
                           current_duration: int, avg_duration: Optional[int],
                           primary: Optional[PathCandidate],
                           best_alt: Optional[PathCandidate] = None,
                           best_alt_duration: Optional[int] = None) -> List[str]:
        """Apply both rules in order. Returns the kinds that were dispatched."""
        channels = self.config.route_channels(route)
        if not channels:
            return []

        settings = self.config.alert_settings
        now = self.clock()
        today = now.date()
        fired = []

        if is_heavy_traffic(current_duration, avg_duration, settings.traffic_threshold_percent):
            if self.ledger.can_send(route.id, today):
                body = heavy_traffic_message(route, context, current_duration, avg_duration, now)
                self.dispatcher.dispatch(channels, HEAVY_TRAFFIC_SUBJECT, body, route)
                self.ledger.increment(route.id, today)
                fired.append(HEAVY_TRAFFIC)
            else:
                self._suppress(route, HEAVY_TRAFFIC)

        if best_alt is not None and saves_enough(current_duration, best_alt_duration):
            # sees the heavy-traffic increment above
            if self.ledger.can_send(route.id, today):
                body = better_route_message(
                    route, current_duration, primary, best_alt_duration, best_alt, now
                )
                self.dispatcher.dispatch(channels, BETTER_ROUTE_SUBJECT, body, route)
                self.ledger.increment(route.id, today)
                fired.append(BETTER_ROUTE)
            else:
                self._suppress(route, BETTER_ROUTE)

        return fired

    def _suppress(self, route: Route, kind: str) -> None:
        self.suppressed += 1
        logger.info(
            f"Alert {kind} for route={route.id} suppressed: "
            f"daily limit of {self.ledger.max_per_day} reached"
        )

    def send_error_alert(self, route: Route, detail: str) -> dict:
        channels = self.config.route_channels(route)
        if not channels:
            return {}
        body = error_message(route, detail, self.clock())
        return self.dispatcher.dispatch(channels, ERROR_SUBJECT, body, route)

    def send_test(self, route_id: Optional[str] = None) -> int:
        """Send a synthetic message to every enabled channel. Returns routes tested."""
        if route_id:
            route = self.config.get_route(route_id)
            routes = [route] if route else []
        else:
            routes = list(self.config.routes)

        tested = 0
        for route in routes:
            channels = self.config.route_channels(route)
            if not channels:
                print(f"  Route {route.id}: no enabled alert channels")
                continue
            names = [ch.value for ch in channels]
            print(f"  Sending test to [{', '.join(names)}] for: {route.label}")
            body = test_message(route, names, self.clock())
            self.dispatcher.dispatch(channels, TEST_SUBJECT, body, route)
            tested += 1
        return tested
