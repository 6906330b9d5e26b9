"""
app/artifact_manager.py
-----------------------------------------------------------------------------
Lifecycle of generated APKs: persist, serve until expiry, delete.

Each generated package lives in ``generated/`` under a unique name and is
tracked by an in-memory record holding its creation time, expiry time, and
the ``threading.Timer`` that will remove it.  The record is the source of
truth for "is this artifact fetchable"; the file is just its payload.

Timers
------
- A timer is only scheduled after the file is fully written.
- Each timer is bound to the record it was created for.  When it fires it
  only removes that exact record, so a late timer can never delete a newer
  artifact that happens to share its name.
- Explicit removal cancels the pending timer.
- Timer callbacks take the lock only to pop the record; file deletion runs
  outside it, as do all reads and writes on the request path.

Restart recovery
----------------
Timers do not survive a process restart.  ``recover()`` re-registers any
artifacts left in the directory using the file's mtime as its creation time,
deleting those already past their retention window.
"""

from __future__ import annotations

import logging
import os
import secrets
import tempfile
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from app.errors import ArtifactNotFound, PersistenceFailure
from app.schema import ArtifactRef

logger = logging.getLogger(__name__)

ARTIFACT_SUFFIX: str = ".apk"
_TMP_PREFIX: str = ".artifact-"


@dataclass(eq=False)
class _ArtifactRecord:
    ref: ArtifactRef
    path: Path
    expires_at_ts: float
    timer: threading.Timer | None = field(default=None, repr=False)


def _utc(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class ArtifactManager:
    """
    Owns the generated-artifact directory.

    Parameters
    ----------
    output_dir        : Directory for generated packages.  Created if missing.
                        No other component writes here.
    retention_seconds : How long an artifact stays fetchable.
    clock             : Returns the current UNIX time in seconds.  Injected
                        so tests can move time forward without sleeping.
    """

    def __init__(
        self,
        output_dir: Path,
        retention_seconds: float,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._dir = Path(output_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._retention = float(retention_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._records: dict[str, _ArtifactRecord] = {}
        self._reserved: set[str] = set()

    @property
    def output_dir(self) -> Path:
        return self._dir

    @property
    def retention_seconds(self) -> float:
        return self._retention

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    @staticmethod
    def is_valid_name(name: str) -> bool:
        """Reject anything that could address a file outside the directory."""
        return (
            bool(name)
            and name.endswith(ARTIFACT_SUFFIX)
            and "/" not in name
            and "\\" not in name
            and not name.startswith(".")
        )

    def _new_name(self, naming_hint: str, now: float) -> str:
        millis = int(now * 1000)
        return f"{naming_hint}_{millis}_{secrets.token_hex(3)}{ARTIFACT_SUFFIX}"

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, container: bytes, naming_hint: str) -> ArtifactRef:
        """
        Persist *container* under a fresh name and schedule its expiry.

        Parameters
        ----------
        container   : Bytes of the generated package.
        naming_hint : Filesystem-safe prefix for the artifact name (the
                      sanitised project label).

        Returns
        -------
        ArtifactRef : Name, timestamps and size of the stored artifact.

        Raises
        ------
        PersistenceFailure
            If the file cannot be written.  No timer is scheduled.
        """
        now = self._clock()
        with self._lock:
            name = self._new_name(naming_hint, now)
            while (
                name in self._records
                or name in self._reserved
                or (self._dir / name).exists()
            ):
                name = self._new_name(naming_hint, now)
            self._reserved.add(name)
        path = self._dir / name

        try:
            self._write(path, container)
            ref = ArtifactRef(
                name=name,
                created_at=_utc(now),
                expires_at=_utc(now + self._retention),
                size_bytes=len(container),
            )
            self._register(ref, path, now + self._retention)
        finally:
            with self._lock:
                self._reserved.discard(name)
        logger.info(
            "Created artifact %s (%d bytes), expires %s", name, len(container), ref.expires_at
        )
        return ref

    def _write(self, path: Path, container: bytes) -> None:
        tmp_path: Path | None = None
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=_TMP_PREFIX, suffix=".tmp")
            tmp_path = Path(tmp_name)
            with os.fdopen(fd, "wb") as fh:
                fh.write(container)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise PersistenceFailure(f"Failed to write artifact {path.name}: {exc}") from exc

    def _register(self, ref: ArtifactRef, path: Path, expires_at_ts: float) -> None:
        record = _ArtifactRecord(ref=ref, path=path, expires_at_ts=expires_at_ts)
        delay = max(0.0, expires_at_ts - self._clock())
        timer = threading.Timer(delay, self._expire_record, args=(record,))
        timer.daemon = True
        record.timer = timer
        with self._lock:
            self._records[ref.name] = record
        timer.start()

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def _live_record(self, name: str) -> _ArtifactRecord:
        if not self.is_valid_name(name):
            raise ArtifactNotFound(f"Artifact '{name}' not found.")
        with self._lock:
            record = self._records.get(name)
        if record is None:
            raise ArtifactNotFound(f"Artifact '{name}' not found.")
        if self._clock() >= record.expires_at_ts:
            self._expire_record(record)
            raise ArtifactNotFound(f"Artifact '{name}' has expired.")
        return record

    def fetch(self, name: str) -> bytes:
        """
        Return the bytes of a live artifact.

        Raises
        ------
        ArtifactNotFound
            If the name is unknown, malformed, expired, or already removed.
        """
        record = self._live_record(name)
        try:
            return record.path.read_bytes()
        except FileNotFoundError as exc:
            # Removed between the record lookup and the read.
            raise ArtifactNotFound(f"Artifact '{name}' not found.") from exc
        except OSError as exc:
            raise PersistenceFailure(f"Failed to read artifact {name}: {exc}") from exc

    def path_for(self, name: str) -> Path:
        """Return the on-disk path of a live artifact, for file streaming."""
        record = self._live_record(name)
        if not record.path.is_file():
            raise ArtifactNotFound(f"Artifact '{name}' not found.")
        return record.path

    def active(self) -> list[ArtifactRef]:
        """Return refs of every live artifact, newest first."""
        with self._lock:
            refs = [record.ref for record in self._records.values()]
        return sorted(refs, key=lambda r: (r.created_at, r.name), reverse=True)

    # ------------------------------------------------------------------
    # Expire
    # ------------------------------------------------------------------

    def expire(self, name: str) -> bool:
        """
        Remove an artifact now.  Idempotent.

        Returns
        -------
        bool : True if a live artifact was removed, False if there was
               nothing to remove.
        """
        with self._lock:
            record = self._records.get(name)
        if record is None:
            return False
        return self._expire_record(record)

    def _expire_record(self, record: _ArtifactRecord) -> bool:
        with self._lock:
            if self._records.get(record.ref.name) is not record:
                return False
            del self._records[record.ref.name]
        if record.timer is not None:
            record.timer.cancel()
        try:
            record.path.unlink(missing_ok=True)
        except OSError:
            logger.exception("Failed to delete expired artifact %s", record.ref.name)
        else:
            logger.info("Removed artifact %s", record.ref.name)
        return True

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    def recover(self) -> int:
        """
        Re-register artifacts left on disk by a previous process.

        Returns
        -------
        int : Number of artifacts re-registered (expired leftovers are
              deleted and not counted).
        """
        for tmp in self._dir.glob(f"{_TMP_PREFIX}*.tmp"):
            tmp.unlink(missing_ok=True)

        now = self._clock()
        restored = 0
        for path in sorted(self._dir.glob(f"*{ARTIFACT_SUFFIX}")):
            if not path.is_file() or not self.is_valid_name(path.name):
                continue
            with self._lock:
                if path.name in self._records:
                    continue
            stat = path.stat()
            created = stat.st_mtime
            expires = created + self._retention
            if expires <= now:
                path.unlink(missing_ok=True)
                logger.info("Deleted stale artifact %s", path.name)
                continue
            ref = ArtifactRef(
                name=path.name,
                created_at=_utc(created),
                expires_at=_utc(expires),
                size_bytes=stat.st_size,
            )
            self._register(ref, path, expires)
            restored += 1

        if restored:
            logger.info("Recovered %d artifact(s) from %s", restored, self._dir)
        return restored

    def shutdown(self) -> None:
        """Cancel every pending expiry timer.  Files are left in place."""
        with self._lock:
            records = list(self._records.values())
        for record in records:
            if record.timer is not None:
                record.timer.cancel()
