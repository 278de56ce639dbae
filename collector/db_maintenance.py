"""
Database Maintenance Utilities

- Ensure secondary indexes for reporting queries
- Create the v_route_stats convenience view (only a reset rebuilds it)
- Administrative reset: drop everything and recreate (DELETES ALL DATA)
"""

import logging

from sqlalchemy import text

from db import Base

logger = logging.getLogger(__name__)

INDEXES = {
    "idx_collections_route": "CREATE INDEX IF NOT EXISTS idx_collections_route ON collections(route_id)",
    "idx_collections_day": "CREATE INDEX IF NOT EXISTS idx_collections_day ON collections(scheduled_day)",
    "idx_collections_month": "CREATE INDEX IF NOT EXISTS idx_collections_month ON collections(month, year)",
    "idx_collections_week": "CREATE INDEX IF NOT EXISTS idx_collections_week ON collections(week_number, year)",
    "idx_collections_date": "CREATE INDEX IF NOT EXISTS idx_collections_date ON collections(collected_at)",
    "idx_routes_collection": "CREATE INDEX IF NOT EXISTS idx_routes_collection ON routes(collection_id)",
    "idx_routes_summary": "CREATE INDEX IF NOT EXISTS idx_routes_summary ON routes(summary)",
    "idx_steps_route": "CREATE INDEX IF NOT EXISTS idx_steps_route ON route_steps(route_id)",
}

STATS_VIEW = "v_route_stats"

STATS_VIEW_SELECT = """
    SELECT
        c.id           AS collection_id,
        c.route_id,
        c.route_label,
        c.scheduled_day,
        c.day_of_week,
        c.scheduled_time,
        c.schedule_mode,
        c.month,
        c.year,
        c.week_number,
        c.collected_at,
        r.id           AS route_db_id,
        r.route_index,
        r.summary      AS route_name,
        r.duration_seconds,
        r.duration_in_traffic_seconds,
        COALESCE(r.duration_in_traffic_seconds, r.duration_seconds) AS effective_duration,
        r.distance_meters,
        r.distance_text,
        r.duration_text,
        r.duration_in_traffic_text
    FROM routes r
    JOIN collections c ON r.collection_id = c.id
"""


def ensure_indexes(engine):
    """Create reporting indexes if missing. Safe to call repeatedly."""
    with engine.connect() as conn:
        for name, sql in INDEXES.items():
            try:
                conn.execute(text(sql))
                logger.debug(f"Index ensured: {name}")
            except Exception as e:
                logger.warning(f"Index {name} failed: {e}")
        conn.commit()


def stats_view_sql(dialect_name: str) -> str:
    # SQLite has no CREATE OR REPLACE VIEW; PostgreSQL has no CREATE VIEW IF NOT EXISTS
    if dialect_name == "sqlite":
        return f"CREATE VIEW IF NOT EXISTS {STATS_VIEW} AS {STATS_VIEW_SELECT}"
    return f"CREATE OR REPLACE VIEW {STATS_VIEW} AS {STATS_VIEW_SELECT}"


def create_stats_view(engine):
    """
    Create the collection/candidate join view if missing.

    Never drops it; only reset_database rebuilds the view.
    """
    with engine.connect() as conn:
        conn.execute(text(stats_view_sql(engine.dialect.name)))
        conn.commit()
    logger.info(f"View ready: {STATS_VIEW}")


def initialize_schema(engine):
    """Tables, indexes and the stats view."""
    Base.metadata.create_all(engine)
    ensure_indexes(engine)
    create_stats_view(engine)


def reset_database(engine):
    """
    Drop the view and all tables, then recreate an empty schema.
    This is the only operation that deletes measurements.
    """
    logger.warning("RESET: dropping all tables")
    with engine.connect() as conn:
        conn.execute(text(f"DROP VIEW IF EXISTS {STATS_VIEW}"))
        conn.commit()
    Base.metadata.drop_all(engine)
    initialize_schema(engine)
    logger.info("RESET: schema recreated")
