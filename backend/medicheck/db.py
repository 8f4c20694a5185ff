# backend/medicheck/db.py
import datetime
from typing import List, Optional, Sequence

from sqlalchemy import JSON, Column, DateTime, Integer, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from medicheck.config import DATABASE_URL, HISTORY_LIMIT
from medicheck.schemas import HistoryEntry


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _engine_for(url: str):
    if url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection, otherwise every session sees an empty database
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url)


engine = _engine_for(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()


class RecentCheck(Base):
    """An input drug list the user analyzed. Results are never stored."""

    __tablename__ = "recent_checks"

    id = Column(Integer, primary_key=True, index=True)
    drugs = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=_utcnow, index=True)


def init_db() -> None:
    Base.metadata.create_all(bind=engine)


def _same_set(a: Sequence[str], b: Sequence[str]) -> bool:
    return sorted(d.casefold() for d in a) == sorted(d.casefold() for d in b)


def record_check(drugs: Sequence[str], limit: int = HISTORY_LIMIT) -> HistoryEntry:
    """
    Store drugs as the newest check, drop older checks of the same set and
    keep only the newest `limit` entries.
    """
    db = SessionLocal()
    try:
        for old in db.query(RecentCheck).all():
            if _same_set(old.drugs or [], drugs):
                db.delete(old)
        record = RecentCheck(drugs=list(drugs), created_at=_utcnow())
        db.add(record)
        db.flush()
        stale = (
            db.query(RecentCheck)
            .order_by(RecentCheck.created_at.desc(), RecentCheck.id.desc())
            .offset(limit)
            .all()
        )
        for old in stale:
            db.delete(old)
        db.commit()
        return HistoryEntry(id=record.id, timestamp=record.created_at, drugs=record.drugs)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def list_recent_checks(limit: Optional[int] = None) -> List[HistoryEntry]:
    db = SessionLocal()
    try:
        q = (
            db.query(RecentCheck)
            .order_by(RecentCheck.created_at.desc(), RecentCheck.id.desc())
            .limit(limit or HISTORY_LIMIT)
        )
        return [HistoryEntry(id=r.id, timestamp=r.created_at, drugs=r.drugs) for r in q]
    finally:
        db.close()


def clear_history() -> None:
    db = SessionLocal()
    try:
        db.query(RecentCheck).delete()
        db.commit()
    finally:
        db.close()


init_db()
