"""
Historical baseline for a route slot.

The baseline is the mean effective duration (duration in traffic, else
free-flow duration) of the primary candidate over all OK collections with
the same route, ISO day and nominal schedule time. Slot matching is an
exact string match on the schedule label, not a time window.

Below `min_samples` the mean is not trusted and None is returned.
"""

import logging
import math
from typing import Optional

from sqlalchemy import func

from db import Collection, PathCandidateRow, get_session

logger = logging.getLogger(__name__)

DEFAULT_MIN_SAMPLES = 5


def historical_average(engine, route_id: str, iso_day: int, time_label: str,
                       min_samples: int = DEFAULT_MIN_SAMPLES) -> Optional[int]:
    """Rounded mean in seconds, or None when there is not enough history."""
    session = get_session(engine)
    try:
        effective = func.coalesce(
            PathCandidateRow.duration_in_traffic_seconds,
            PathCandidateRow.duration_seconds,
        )
        avg_duration, samples = (
            session.query(func.avg(effective), func.count(PathCandidateRow.id))
            .join(Collection, PathCandidateRow.collection_id == Collection.id)
            .filter(
                Collection.route_id == route_id,
                Collection.scheduled_day == iso_day,
                Collection.scheduled_time == time_label,
                Collection.api_status == 'OK',
                PathCandidateRow.route_index == 0,
            )
            .one()
        )
    finally:
        session.close()

    if not samples or samples < min_samples or avg_duration is None:
        logger.debug(
            f"Baseline {route_id} day={iso_day} {time_label}: "
            f"{samples or 0} samples (< {min_samples})"
        )
        return None

    # half up, not banker's rounding
    return int(math.floor(float(avg_duration) + 0.5))
