from __future__ import annotations

import datetime as dt
import logging
import shutil
import tempfile
import time
import uuid
from pathlib import Path
from typing import BinaryIO, Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from .db import create_session_factory, init_db
from .errors import FileNotFoundOrExpired
from .ids import generate_id
from .models import StoredFile, utcnow

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024  # 1MB
SCRATCH_PREFIX = "fh-"


def save_stream(source: BinaryIO, destination: Path) -> int:
    """Copy a stream into ``destination`` and return the number of bytes written."""
    destination.parent.mkdir(parents=True, exist_ok=True)

    size = 0
    with destination.open("wb") as out:
        while True:
            chunk = source.read(CHUNK_SIZE)
            if not chunk:
                break
            size += len(chunk)
            out.write(chunk)
    return size


class _LiveIds:
    """Collision check for the ID generator backed by primary-key lookups."""

    def __init__(self, db: Session):
        self._db = db

    def __contains__(self, file_id: object) -> bool:
        return self._db.get(StoredFile, file_id) is not None


class ScratchDir:
    """Per-request scratch directory, removed by ``release``.

    ``release`` is idempotent, so it can be wired to several exit paths of
    the same request.
    """

    def __init__(self, root: Path):
        root.mkdir(parents=True, exist_ok=True)
        self.path = Path(tempfile.mkdtemp(prefix=SCRATCH_PREFIX, dir=root))

    def release(self) -> None:
        shutil.rmtree(self.path, ignore_errors=True)

    def __enter__(self) -> "ScratchDir":
        return self

    def __exit__(self, *exc) -> None:
        self.release()


class EphemeralStore:
    def __init__(
        self,
        engine: Engine,
        files_dir: Path,
        scratch_dir: Path,
        ttl: dt.timedelta,
        clock: Callable[[], dt.datetime] = utcnow,
    ):
        self._engine = engine
        self._session_factory = create_session_factory(engine)
        self.files_dir = Path(files_dir)
        self.scratch_dir = Path(scratch_dir)
        self.ttl = ttl
        self._clock = clock

    def prepare(self) -> None:
        self.files_dir.mkdir(parents=True, exist_ok=True)
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        init_db(self._engine)

    def put(self, original_name: str, content: BinaryIO) -> StoredFile:
        # bytes first, index row second: a row never points at a half-written file
        stored_path = self.files_dir / uuid.uuid4().hex
        size = save_stream(content, stored_path)

        try:
            with self._session_factory() as db:
                while True:
                    now = self._clock()
                    record = StoredFile(
                        id=generate_id(_LiveIds(db)),
                        original_name=original_name,
                        size_bytes=size,
                        stored_path=str(stored_path),
                        created_at=now,
                        expires_at=now + self.ttl,
                    )
                    db.add(record)
                    try:
                        db.commit()
                    except IntegrityError:
                        # a concurrent put took the same ID first
                        db.rollback()
                        continue
                    break
        except BaseException:
            stored_path.unlink(missing_ok=True)
            raise

        logger.info("Stored %s as %s (%d bytes)", original_name, record.id, size)
        return record

    def resolve(self, file_id: str) -> StoredFile:
        with self._session_factory() as db:
            record = db.get(StoredFile, file_id)
        if record is None or record.is_expired(self._clock()):
            raise FileNotFoundOrExpired()
        if not Path(record.stored_path).is_file():
            raise FileNotFoundOrExpired()
        return record

    def copy_to(self, record: StoredFile, destination: Path) -> Path:
        try:
            shutil.copyfile(record.stored_path, destination)
        except FileNotFoundError:
            # swept between resolve and copy
            raise FileNotFoundOrExpired() from None
        return destination

    def discard(self, file_id: str) -> None:
        with self._session_factory() as db:
            record = db.get(StoredFile, file_id)
            if record is None:
                return
            db.delete(record)
            db.commit()
        Path(record.stored_path).unlink(missing_ok=True)

    def sweep(self) -> int:
        now = self._clock()
        with self._session_factory() as db:
            expired = db.execute(
                select(StoredFile).where(StoredFile.expires_at < now)
            ).scalars().all()

        removed = 0
        for record in expired:
            try:
                with self._session_factory() as db:
                    db.execute(
                        delete(StoredFile).where(StoredFile.id == record.id)
                    )
                    db.commit()
                Path(record.stored_path).unlink(missing_ok=True)
                removed += 1
            except (OSError, SQLAlchemyError) as e:
                logger.warning("Failed to delete expired file %s: %s", record.id, e)

        self._remove_orphans()
        if removed:
            logger.info("Sweep removed %d expired files", removed)
        return removed

    def _remove_orphans(self) -> None:
        # leftovers of crashed uploads and requests; younger ones may still be in use
        cutoff = time.time() - self.ttl.total_seconds()

        with self._session_factory() as db:
            known = set(db.execute(select(StoredFile.stored_path)).scalars())

        for path in self._scan(self.files_dir):
            if str(path) in known:
                continue
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    logger.info("Removed orphaned content file %s", path.name)
            except OSError as e:
                logger.debug("Skipping %s: %s", path.name, e)

        for path in self._scan(self.scratch_dir):
            if not path.name.startswith(SCRATCH_PREFIX):
                continue
            try:
                if path.stat().st_mtime < cutoff:
                    shutil.rmtree(path, ignore_errors=True)
                    logger.info("Removed stale scratch directory %s", path.name)
            except OSError as e:
                logger.debug("Skipping %s: %s", path.name, e)

    @staticmethod
    def _scan(directory: Path) -> list[Path]:
        try:
            return list(directory.iterdir())
        except FileNotFoundError:
            return []

    def scratch(self) -> ScratchDir:
        return ScratchDir(self.scratch_dir)
