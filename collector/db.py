"""
Database models and utilities for route measurement persistence.

Three append-only tables form an ownership chain:

  collections   one row per provider call (raw response kept verbatim)
  routes        path candidates of a collection, route_index 0 = primary
  route_steps   ordered steps of a path candidate

Deleting a collection cascades to its candidates and their steps. Nothing
here updates history; the only delete path is the administrative reset in
db_maintenance.

alert_counts holds the per-day alert ledger (see alert_ledger).
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    Column, DateTime, Float, ForeignKey, Integer, String, Text,
    PrimaryKeyConstraint, create_engine, event,
)
from sqlalchemy.orm import declarative_base, relationship, selectinload, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()


class Collection(Base):
    """One measurement of one route."""
    __tablename__ = 'collections'

    id = Column(Integer, primary_key=True, autoincrement=True)
    route_id = Column(String(100), nullable=False, index=True)
    route_label = Column(String(200))
    collected_at = Column(DateTime(timezone=True), nullable=False)
    # Schedule context: baseline slot = (route_id, scheduled_day, scheduled_time)
    scheduled_day = Column(Integer, nullable=False)      # ISO 1=Mon .. 7=Sun
    scheduled_time = Column(String(5), nullable=False)   # nominal HH:MM
    schedule_mode = Column(String(10))                   # depart / arrive
    # Calendar breakdown for reporting
    day_of_week = Column(String(10), nullable=False)
    week_number = Column(Integer, nullable=False)
    month = Column(Integer, nullable=False)
    year = Column(Integer, nullable=False)
    origin = Column(Text, nullable=False)
    destination = Column(Text, nullable=False)
    travel_mode = Column(String(20), nullable=False)
    api_status = Column(String(50))
    raw_response = Column(Text)                          # audit trail

    candidates = relationship(
        "PathCandidateRow",
        back_populates="collection",
        order_by="PathCandidateRow.route_index",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class PathCandidateRow(Base):
    """A route alternative returned for a collection."""
    __tablename__ = 'routes'

    id = Column(Integer, primary_key=True, autoincrement=True)
    collection_id = Column(
        Integer, ForeignKey('collections.id', ondelete='CASCADE'), nullable=False,
    )
    route_index = Column(Integer, nullable=False)
    summary = Column(Text)
    distance_meters = Column(Integer, nullable=False, default=0)
    distance_text = Column(String(50))
    duration_seconds = Column(Integer, nullable=False, default=0)
    duration_text = Column(String(50))
    duration_in_traffic_seconds = Column(Integer, nullable=True)   # NULL = unknown
    duration_in_traffic_text = Column(String(50), nullable=True)
    start_address = Column(Text)
    end_address = Column(Text)
    warnings = Column(Text)                                        # joined with " | "

    collection = relationship("Collection", back_populates="candidates")
    steps = relationship(
        "RouteStepRow",
        back_populates="candidate",
        order_by="RouteStepRow.step_index",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class RouteStepRow(Base):
    """One turn-by-turn step of a path candidate."""
    __tablename__ = 'route_steps'

    id = Column(Integer, primary_key=True, autoincrement=True)
    route_id = Column(
        Integer, ForeignKey('routes.id', ondelete='CASCADE'), nullable=False,
    )
    step_index = Column(Integer, nullable=False)
    instruction = Column(Text)
    distance_meters = Column(Integer)
    duration_seconds = Column(Integer)
    travel_mode = Column(String(20))
    road_name = Column(Text)
    start_lat = Column(Float)
    start_lng = Column(Float)
    end_lat = Column(Float)
    end_lng = Column(Float)

    candidate = relationship("PathCandidateRow", back_populates="steps")


class AlertCount(Base):
    """Alerts dispatched per route per calendar day."""
    __tablename__ = 'alert_counts'
    __table_args__ = (PrimaryKeyConstraint('day', 'route_id'),)

    day = Column(String(10), nullable=False)       # ISO date YYYY-MM-DD
    route_id = Column(String(100), nullable=False)
    count = Column(Integer, nullable=False, default=0)


# ---------------------------------------------------------------------------
# Engine / session
# ---------------------------------------------------------------------------

def _enable_sqlite_pragmas(engine, wal: bool) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if wal:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()


def get_db_engine(database_url: str, create_tables: bool = True):
    """
    Create an engine for `database_url` and make sure the schema exists.

    SQLite connections get foreign keys enabled (needed for cascades);
    file databases also switch to WAL journaling.
    """
    if database_url.startswith('sqlite'):
        db_file = database_url.split(':///', 1)[-1]
        in_memory = db_file in ('', ':memory:') or database_url == 'sqlite://'
        if not in_memory:
            Path(db_file).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(database_url)
        _enable_sqlite_pragmas(engine, wal=not in_memory)
    else:
        engine = create_engine(database_url, pool_pre_ping=True)

    if create_tables:
        Base.metadata.create_all(engine)
        logger.info("Database connected and tables created")
    return engine


def get_session(engine):
    """Get a database session bound to `engine`."""
    return sessionmaker(bind=engine)()


# ---------------------------------------------------------------------------
# Persistence writer
# ---------------------------------------------------------------------------

def save_collection(engine, context, result, collected_at: datetime) -> int:
    """
    Persist one measurement. Returns the collection id.

    The collection row is always written, whatever the provider status.
    Candidates and steps are written only for status OK, in provider order.
    Raises on database errors after rolling back.
    """
    route = context.route
    session = get_session(engine)
    try:
        iso_year, iso_week, _ = collected_at.isocalendar()
        collection = Collection(
            route_id=route.id,
            route_label=route.label,
            collected_at=collected_at,
            scheduled_day=context.scheduled_day,
            scheduled_time=context.scheduled_time,
            schedule_mode=context.mode,
            day_of_week=collected_at.strftime('%A'),
            week_number=iso_week,
            month=collected_at.month,
            year=collected_at.year,
            origin=route.origin,
            destination=route.destination,
            travel_mode=route.travel_mode,
            api_status=result.status,
            raw_response=result.raw_response,
        )
        session.add(collection)
        session.flush()

        if result.ok:
            for candidate in result.candidates:
                row = PathCandidateRow(
                    collection_id=collection.id,
                    route_index=candidate.route_index,
                    summary=candidate.summary,
                    distance_meters=candidate.distance_meters,
                    distance_text=candidate.distance_text,
                    duration_seconds=candidate.duration_seconds,
                    duration_text=candidate.duration_text,
                    duration_in_traffic_seconds=candidate.duration_in_traffic_seconds,
                    duration_in_traffic_text=candidate.duration_in_traffic_text,
                    start_address=candidate.start_address,
                    end_address=candidate.end_address,
                    warnings=' | '.join(candidate.warnings),
                )
                session.add(row)
                session.flush()
                session.add_all([
                    RouteStepRow(
                        route_id=row.id,
                        step_index=step.step_index,
                        instruction=step.instruction,
                        distance_meters=step.distance_meters,
                        duration_seconds=step.duration_seconds,
                        travel_mode=step.travel_mode,
                        road_name=step.road_name,
                        start_lat=step.start_lat,
                        start_lng=step.start_lng,
                        end_lat=step.end_lat,
                        end_lng=step.end_lng,
                    )
                    for step in candidate.steps
                ])

        session.commit()
        return collection.id
    except Exception as e:
        logger.error(f"Error saving collection for {route.id}: {e}")
        session.rollback()
        raise
    finally:
        session.close()


def get_collection(engine, collection_id: int) -> Optional[Collection]:
    """Load a collection with its candidates and steps (detached)."""
    session = get_session(engine)
    try:
        collection = (
            session.query(Collection)
            .options(selectinload(Collection.candidates).selectinload(PathCandidateRow.steps))
            .filter(Collection.id == collection_id)
            .one_or_none()
        )
        if collection is not None:
            session.expunge_all()
        return collection
    finally:
        session.close()
