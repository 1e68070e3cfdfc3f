"""
Database connection, schema and queries for topic history and competitions.
Uses a synchronous SQLAlchemy engine; async callers go through asyncio.to_thread.
"""
import json
import re
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

import structlog
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from topic_sync.config import get_settings
from topic_sync.errors import PersistFailure
from topic_sync.models import CompetitionListing, MaterializedRecord

logger = structlog.get_logger()

metadata = MetaData()

topic_inferences = Table(
    "topic_inferences",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("topic_id", String(64), nullable=False, index=True),
    Column("timestamp", DateTime, nullable=False, index=True),
    Column("inference_block_height", String(64), nullable=False),
    Column("loss_block_height", String(64), nullable=False),
    Column("data", Text, nullable=False),
    UniqueConstraint("topic_id", "inference_block_height", name="uq_topic_inference_height"),
)

competitions = Table(
    "competitions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("name", Text, nullable=False, default=""),
    Column("preview_image_url", Text, nullable=False, default=""),
    Column("description", Text, nullable=False, default=""),
    Column("detailed_description", Text, nullable=False, default=""),
    Column("topic_id", Integer, nullable=False, index=True),
    Column("prize_pool", Integer, nullable=False, default=0),
    Column("start_date", String(64), nullable=False, default=""),
    Column("end_date", String(64), nullable=False, default=""),
    Column("season_id", Integer, nullable=False, default=0),
    Column("tags", Text, nullable=False, default="[]"),
    Column("is_active", Boolean, nullable=False, default=False),
    Column("timestamp", DateTime, nullable=False),
)

competition_snapshots = Table(
    "competition_snapshots",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("timestamp", DateTime, nullable=False, index=True),
    Column("data", Text, nullable=False),
)

_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(value: str) -> datetime:
    """
    Parse an RFC3339 timestamp into a naive UTC datetime.
    Chain block times carry nanoseconds; the fraction is cut to microseconds.
    """
    raw = value.strip().replace("Z", "+00:00")
    raw = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), raw, count=1)
    return to_naive_utc(datetime.fromisoformat(raw))


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are taken as UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class TopicDatabase:
    """
    Durable store for materialized topic records and Forge competitions.

    The refresher only depends on save_topic_snapshot and
    resolve_competition_id; the rest serves the HTTP API, the CLI and the
    competition monitor.
    """

    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        settings = get_settings()
        self.database_url = database_url or settings.database_url
        self._echo = settings.debug if echo is None else echo
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    # =========================================================================
    # ENGINE & SESSIONS
    # =========================================================================

    @property
    def engine(self) -> Engine:
        """Lazy-create the SQLAlchemy engine."""
        if self._engine is None:
            url = make_url(self.database_url)
            kwargs: dict[str, Any] = {"echo": self._echo}

            if url.get_backend_name() == "sqlite":
                if url.database and url.database != ":memory:":
                    Path(url.database).parent.mkdir(parents=True, exist_ok=True)
                kwargs["connect_args"] = {"check_same_thread": False}
            else:
                kwargs.update(
                    pool_size=5,
                    max_overflow=10,
                    pool_timeout=30,
                    pool_recycle=1800,
                    pool_pre_ping=True,
                )

            self._engine = create_engine(self.database_url, **kwargs)
            logger.info("Created SQLAlchemy engine", backend=url.get_backend_name())

        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        """Lazy-create session factory."""
        if self._session_factory is None:
            self._session_factory = sessionmaker(
                bind=self.engine,
                autocommit=False,
                autoflush=False,
            )
        return self._session_factory

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for database sessions."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_schema(self) -> None:
        """Create tables and indexes that do not exist yet."""
        metadata.create_all(self.engine)
        logger.info("Database schema ready", tables=sorted(metadata.tables))

    def health_check(self) -> bool:
        """Check database connectivity."""
        try:
            with self.session() as session:
                return session.execute(text("SELECT 1")).scalar() == 1
        except SQLAlchemyError as e:
            logger.error("Database health check failed", error=str(e))
            return False

    def close(self) -> None:
        """Dispose of the engine and its pool."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Closed database engine")

    # =========================================================================
    # TOPIC INFERENCES
    # =========================================================================

    def save_topic_snapshot(self, record: MaterializedRecord) -> None:
        """
        Upsert a materialized record keyed by (topic_id, inference_block_height).
        An existing row gets its timestamp, loss height and payload replaced.

        Raises:
            PersistFailure: the write could not be committed
        """
        try:
            timestamp = parse_timestamp(record.timestamp)
        except ValueError as e:
            raise PersistFailure(f"topic {record.topic_id}: bad timestamp {record.timestamp!r}") from e

        values = {
            "timestamp": timestamp,
            "loss_block_height": record.loss_block_height,
            "data": json.dumps(record.to_storage_dict(), default=str),
        }
        t = topic_inferences.c

        try:
            with self.session() as session:
                result = session.execute(
                    update(topic_inferences)
                    .where(t.topic_id == record.topic_id)
                    .where(t.inference_block_height == record.inference_block_height)
                    .values(**values)
                )
                updated = result.rowcount > 0
                if not updated:
                    session.execute(
                        insert(topic_inferences).values(
                            topic_id=record.topic_id,
                            inference_block_height=record.inference_block_height,
                            **values,
                        )
                    )
        except SQLAlchemyError as e:
            raise PersistFailure(f"topic {record.topic_id}: {e}") from e

        logger.debug(
            "Saved topic snapshot",
            topic_id=record.topic_id,
            inference_block_height=record.inference_block_height,
            updated=updated,
        )

    def _neighbour_heights(
        self,
        session: Session,
        topic_id: str,
        timestamp: datetime,
    ) -> tuple[Optional[str], Optional[str]]:
        t = topic_inferences.c
        prev_height = session.execute(
            select(t.inference_block_height)
            .where(t.topic_id == topic_id, t.timestamp < timestamp)
            .order_by(t.timestamp.desc())
            .limit(1)
        ).scalar()
        next_height = session.execute(
            select(t.inference_block_height)
            .where(t.topic_id == topic_id, t.timestamp > timestamp)
            .order_by(t.timestamp.asc())
            .limit(1)
        ).scalar()
        return prev_height, next_height

    def _fetch_one(self, *conditions) -> Optional[dict[str, Any]]:
        t = topic_inferences.c
        with self.session() as session:
            row = session.execute(
                select(t.topic_id, t.timestamp, t.data)
                .where(*conditions)
                .order_by(t.timestamp.desc())
                .limit(1)
            ).first()
            if row is None:
                return None

            data = json.loads(row.data)
            data["prev_height"], data["next_height"] = self._neighbour_heights(
                session, row.topic_id, row.timestamp
            )
            return data

    def get_latest_topic_snapshot(self, topic_id: str) -> Optional[dict[str, Any]]:
        """Newest stored record of a topic with its neighbouring heights."""
        return self._fetch_one(topic_inferences.c.topic_id == str(topic_id))

    def get_topic_snapshot_by_height(self, topic_id: str, height: str) -> Optional[dict[str, Any]]:
        """Stored record of a topic at an inference height, with neighbouring heights."""
        t = topic_inferences.c
        return self._fetch_one(t.topic_id == str(topic_id), t.inference_block_height == str(height))

    def get_topic_block_heights(
        self,
        topic_id: str,
        limit: int = 100,
        offset: int = 0,
    ) -> dict[str, Any]:
        """Stored inference heights of a topic, newest first."""
        t = topic_inferences.c
        with self.session() as session:
            heights = session.execute(
                select(t.inference_block_height)
                .where(t.topic_id == str(topic_id))
                .order_by(t.timestamp.desc())
                .limit(limit)
                .offset(offset)
            ).scalars().all()
            total = session.execute(
                select(func.count()).select_from(topic_inferences).where(t.topic_id == str(topic_id))
            ).scalar()

        return {
            "topic_id": str(topic_id),
            "block_heights": list(heights),
            "total_count": total or 0,
            "limit": limit,
            "offset": offset,
        }

    def get_topic_stats(self, topic_id: str) -> dict[str, Any]:
        """Record count, time span and stored payload size of one topic."""
        t = topic_inferences.c
        with self.session() as session:
            count, oldest, newest, size = session.execute(
                select(
                    func.count(),
                    func.min(t.timestamp),
                    func.max(t.timestamp),
                    func.sum(func.length(t.data)),
                )
                .select_from(topic_inferences)
                .where(t.topic_id == str(topic_id))
            ).one()

        size = size or 0
        return {
            "topic_id": str(topic_id),
            "record_count": count or 0,
            "oldest_timestamp": oldest.isoformat() if oldest else None,
            "newest_timestamp": newest.isoformat() if newest else None,
            "total_size_bytes": size,
            "total_size_mb": round(size / (1024 * 1024), 4),
        }

    def prune_old_topic_data(self, retention: timedelta, topic_id: Optional[str] = None) -> int:
        """
        Delete topic records older than the retention window. Returns topic rows deleted.
        Without a topic_id, competition snapshots past the window go too.
        """
        cutoff = utc_now() - retention
        t = topic_inferences.c
        stmt = delete(topic_inferences).where(t.timestamp < cutoff)
        if topic_id is not None:
            stmt = stmt.where(t.topic_id == str(topic_id))

        try:
            with self.session() as session:
                deleted = session.execute(stmt).rowcount or 0
                snapshots_deleted = 0
                if topic_id is None:
                    snapshots_deleted = session.execute(
                        delete(competition_snapshots).where(competition_snapshots.c.timestamp < cutoff)
                    ).rowcount or 0
        except SQLAlchemyError as e:
            raise PersistFailure(f"prune: {e}") from e

        logger.info(
            "Pruned topic data",
            topic_id=topic_id,
            cutoff=cutoff.isoformat(),
            deleted=deleted,
            competition_snapshots_deleted=snapshots_deleted,
        )
        return deleted

    # =========================================================================
    # COMPETITIONS
    # =========================================================================

    def save_competitions(self, listing: CompetitionListing, timestamp: Optional[datetime] = None) -> int:
        """
        Replace the competitions table with the given listing and append a
        timestamped snapshot of the whole listing to competition_snapshots.
        Past entries are written after active ones and win on duplicate ids.

        Raises:
            PersistFailure: the transaction could not be committed
        """
        now = utc_now() if timestamp is None else to_naive_utc(timestamp)
        rows: dict[int, dict[str, Any]] = {}
        for competition in [*listing.active_and_upcoming, *listing.past]:
            rows[competition.id] = {
                "id": competition.id,
                "name": competition.name,
                "preview_image_url": competition.preview_image_url,
                "description": competition.description,
                "detailed_description": competition.detailed_description,
                "topic_id": competition.topic_id,
                "prize_pool": competition.prize_pool,
                "start_date": competition.start_date,
                "end_date": competition.end_date,
                "season_id": competition.season_id,
                "tags": json.dumps(competition.tags),
                "is_active": listing.is_active(competition),
                "timestamp": now,
            }

        try:
            with self.session() as session:
                session.execute(delete(competitions))
                if rows:
                    session.execute(insert(competitions), list(rows.values()))
                session.execute(
                    insert(competition_snapshots).values(
                        timestamp=now,
                        data=json.dumps(listing.model_dump(mode="json")),
                    )
                )
        except SQLAlchemyError as e:
            raise PersistFailure(f"competitions: {e}") from e

        logger.info("Saved competitions", count=len(rows))
        return len(rows)

    def get_competitions(self, active_only: bool = False) -> list[dict[str, Any]]:
        """Stored competitions ordered by id."""
        stmt = select(competitions).order_by(competitions.c.id)
        if active_only:
            stmt = stmt.where(competitions.c.is_active.is_(True))

        with self.session() as session:
            rows = session.execute(stmt).mappings().all()

        result = []
        for row in rows:
            item = dict(row)
            item["tags"] = json.loads(item["tags"] or "[]")
            item["timestamp"] = item["timestamp"].isoformat()
            result.append(item)
        return result

    def get_competitions_by_time_range(self, start: datetime, end: datetime) -> list[dict[str, Any]]:
        """Competition listings captured between start and end (inclusive), oldest first."""
        s = competition_snapshots.c
        with self.session() as session:
            rows = session.execute(
                select(s.timestamp, s.data)
                .where(s.timestamp.between(to_naive_utc(start), to_naive_utc(end)))
                .order_by(s.timestamp.asc(), s.id.asc())
            ).all()

        return [
            {"timestamp": row.timestamp.isoformat(), **json.loads(row.data)}
            for row in rows
        ]

    def resolve_competition_id(self, topic_id: str) -> Optional[str]:
        """Newest competition id bound to a topic, or None."""
        try:
            numeric_topic = int(topic_id)
        except (TypeError, ValueError):
            return None

        c = competitions.c
        with self.session() as session:
            competition_id = session.execute(
                select(c.id)
                .where(c.topic_id == numeric_topic)
                .order_by(c.timestamp.desc(), c.id.desc())
                .limit(1)
            ).scalar()

        return None if competition_id is None else str(competition_id)

    # =========================================================================
    # STATS
    # =========================================================================

    def get_database_stats(self) -> dict[str, Any]:
        """Row counts per table and stored topics."""
        t = topic_inferences.c
        with self.session() as session:
            topic_rows, topics, oldest, newest = session.execute(
                select(
                    func.count(),
                    func.count(t.topic_id.distinct()),
                    func.min(t.timestamp),
                    func.max(t.timestamp),
                ).select_from(topic_inferences)
            ).one()
            competition_rows = session.execute(
                select(func.count()).select_from(competitions)
            ).scalar()

        return {
            "topic_inference_rows": topic_rows or 0,
            "topics": topics or 0,
            "competition_rows": competition_rows or 0,
            "oldest_timestamp": oldest.isoformat() if oldest else None,
            "newest_timestamp": newest.isoformat() if newest else None,
        }

