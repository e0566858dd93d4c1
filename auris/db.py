"""SQLite-backed recordings table (SQLAlchemy)."""
from __future__ import annotations

import contextlib
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Sequence

from sqlalchemy import Column, DateTime, Float, Integer, String, Text, create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import get_cfg, section
from .media import probe_duration

Base = declarative_base()

_engine: Engine | None = None
_session_factory: sessionmaker | None = None
_engine_lock = threading.Lock()
_synced = False


class Recording(Base):
    __tablename__ = "recordings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    filename = Column(String, unique=True, nullable=False, index=True)
    # NULL while the capture unit is still writing the file
    size = Column(Integer, nullable=True)
    duration = Column(Float, nullable=True)
    device = Column(String, nullable=True)
    waveform = Column(Text, nullable=True)
    waveform_hash = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))

    def created_at_ms(self) -> int:
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return int(created.timestamp() * 1000)

    def to_dict(self) -> dict[str, object]:
        return {
            "filename": self.filename,
            "size": self.size,
            "createdAt": self.created_at_ms(),
            "duration": self.duration,
            "device": self.device,
            "waveformHash": self.waveform_hash,
        }


def _set_sqlite_pragmas(dbapi_connection, _record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def database_path() -> Path:
    return Path(section(get_cfg(), "paths")["database_path"])


def init_db(path: Path | None = None) -> Engine:
    """Create the engine and schema once per process."""
    global _engine, _session_factory
    with _engine_lock:
        if _engine is not None:
            return _engine
        target = path or database_path()
        target.parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(f"sqlite:///{target}", future=True)
        event.listen(engine, "connect", _set_sqlite_pragmas)
        Base.metadata.create_all(engine)
        _engine = engine
        _session_factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)
        return engine


def reset_db() -> None:
    """Dispose the engine so the next call re-reads configuration."""
    global _engine, _session_factory, _synced
    with _engine_lock:
        if _engine is not None:
            _engine.dispose()
        _engine = None
        _session_factory = None
        _synced = False


@contextlib.contextmanager
def session_scope() -> Iterator[Session]:
    init_db()
    assert _session_factory is not None
    session = _session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _row_for_file(path: Path) -> Recording:
    stat = path.stat()
    return Recording(
        filename=path.name,
        size=stat.st_size,
        duration=probe_duration(path),
        device=None,
        created_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
    )


def sync_existing_recordings(recordings_dir: Path) -> int:
    """Insert rows for .mp3 files on disk that the table does not know yet."""
    global _synced
    if _synced:
        return 0
    _synced = True

    log = logging.getLogger("auris.db")
    try:
        mp3_files = sorted(p for p in recordings_dir.iterdir() if p.suffix == ".mp3")
    except OSError:
        # recordings dir might not exist yet
        return 0

    inserted = 0
    with session_scope() as session:
        existing = set(session.scalars(select(Recording.filename)))
        for path in mp3_files:
            if path.name in existing:
                continue
            try:
                session.add(_row_for_file(path))
            except OSError as exc:
                log.debug("Skipping %s: %s", path, exc)
                continue
            inserted += 1
    if inserted:
        log.info("Indexed %d existing recording(s) from %s", inserted, recordings_dir)
    return inserted


def list_recordings() -> list[Recording]:
    with session_scope() as session:
        stmt = select(Recording).order_by(Recording.created_at.desc())
        return list(session.scalars(stmt))


def get_recording(filename: str) -> Recording | None:
    with session_scope() as session:
        return session.scalars(select(Recording).where(Recording.filename == filename)).first()


def active_recording() -> Recording | None:
    with session_scope() as session:
        return session.scalars(select(Recording).where(Recording.size.is_(None)).limit(1)).first()


def insert_recording(filename: str, *, device: str | None = None) -> bool:
    """Insert a row for a recording in progress; existing rows are left alone."""
    with session_scope() as session:
        if session.scalars(select(Recording.id).where(Recording.filename == filename)).first():
            return False
        session.add(Recording(filename=filename, device=device))
        return True


def index_recording(path: Path) -> bool:
    """Insert a row for a finished file on disk; existing rows are left alone."""
    with session_scope() as session:
        if session.scalars(select(Recording.id).where(Recording.filename == path.name)).first():
            return False
        session.add(_row_for_file(path))
        return True


def finalize_recording(filename: str, *, size: int, duration: float | None) -> None:
    with session_scope() as session:
        row = session.scalars(select(Recording).where(Recording.filename == filename)).first()
        if row is None:
            return
        row.size = size
        row.duration = duration


def store_waveform(filename: str, waveform_json: str, waveform_hash: str) -> bool:
    with session_scope() as session:
        row = session.scalars(select(Recording).where(Recording.filename == filename)).first()
        if row is None:
            return False
        row.waveform = waveform_json
        row.waveform_hash = waveform_hash
        return True


def get_waveform(filename: str) -> str | None:
    with session_scope() as session:
        return session.scalars(
            select(Recording.waveform).where(Recording.filename == filename)
        ).first()


def get_waveform_peaks(filename: str) -> list[float] | None:
    raw = get_waveform(filename)
    if not raw:
        return None
    return [float(value) for value in json.loads(raw)]


def filenames_missing_waveform(filenames: Sequence[str]) -> set[str]:
    with session_scope() as session:
        cached = set(
            session.scalars(
                select(Recording.filename).where(
                    Recording.filename.in_(list(filenames)),
                    Recording.waveform.is_not(None),
                )
            )
        )
    return set(filenames) - cached


def delete_recording(filename: str) -> bool:
    with session_scope() as session:
        row = session.scalars(select(Recording).where(Recording.filename == filename)).first()
        if row is None:
            return False
        session.delete(row)
        return True
