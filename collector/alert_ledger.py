"""
Alert Count Ledger

Counts alert dispatch attempts per route per calendar day, so the alert
manager can cap how many heavy-traffic / better-route alerts a route sends
in one day. Error alerts do not go through the ledger.

Counts live in the alert_counts table. An increment is one transaction:
prune rows for other days, bump today's row with UPDATE count = count + 1,
insert it if missing. Overlapping runs therefore never lose an increment.
"""

import logging
from datetime import date

from sqlalchemy.exc import IntegrityError

from db import AlertCount, get_session

logger = logging.getLogger(__name__)


class AlertLedger:
    """Per-route, per-day alert counter backed by the measurement database."""

    def __init__(self, engine, max_per_day: int = 3):
        self.engine = engine
        self.max_per_day = max_per_day

    def count(self, route_id: str, day: date) -> int:
        session = get_session(self.engine)
        try:
            row = session.get(AlertCount, {"day": day.isoformat(), "route_id": route_id})
            return row.count if row else 0
        finally:
            session.close()

    def can_send(self, route_id: str, day: date) -> bool:
        return self.count(route_id, day) < self.max_per_day

    def increment(self, route_id: str, day: date) -> int:
        """Record one dispatch attempt. Returns today's new count."""
        today = day.isoformat()
        for attempt in range(2):
            session = get_session(self.engine)
            try:
                pruned = (
                    session.query(AlertCount)
                    .filter(AlertCount.day != today)
                    .delete(synchronize_session=False)
                )
                if pruned:
                    logger.debug(f"Alert ledger: pruned {pruned} rows from previous days")

                updated = (
                    session.query(AlertCount)
                    .filter(AlertCount.day == today, AlertCount.route_id == route_id)
                    .update({AlertCount.count: AlertCount.count + 1}, synchronize_session=False)
                )
                if not updated:
                    session.add(AlertCount(day=today, route_id=route_id, count=1))
                session.commit()
                return self.count(route_id, day)
            except IntegrityError:
                # another run inserted today's row first; retry as an update
                session.rollback()
                if attempt:
                    raise
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()
