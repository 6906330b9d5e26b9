"""
app/template_registry.py
-----------------------------------------------------------------------------
Storage for uploaded APK templates and the "current template" pointer.

Layout
------
::

    templates/
        template_1760000000000000000.apk   ← immutable history blobs
        template_1760000123456789012.apk
        CURRENT                            ← name of the active blob

Every blob and the ``CURRENT`` pointer are written to a temporary file in the
same directory and moved into place with ``os.replace``, which is atomic on
POSIX and Windows.  A crash mid-upload leaves at most a stray ``*.tmp`` file;
``CURRENT`` always names a fully written blob.

Concurrency
-----------
The registry holds the active template as an immutable ``(TemplateId,
bytes)`` snapshot.  Writers serialise on a promote lock while they
rewrite ``CURRENT``.  The reader lock guards only the in-memory swap, so
readers never wait on file I/O and never see a partial blob.  When two
uploads race, whichever finishes its promote step last becomes current,
on disk and in memory.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

from app.errors import NoTemplateAvailable, PersistenceFailure
from app.schema import TemplateId

logger = logging.getLogger(__name__)

CURRENT_POINTER: str = "CURRENT"

_TEMPLATE_NAME = re.compile(r"^template_(\d+)\.apk$")


def _atomic_write(directory: Path, final_name: str, data: bytes) -> Path:
    """Write *data* to ``directory/final_name`` via a synced temp file + rename."""
    fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=".upload-", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        final_path = directory / final_name
        os.replace(tmp_path, final_path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return final_path


def _template_id_from_ns(ns: int) -> TemplateId:
    return TemplateId(
        name=f"template_{ns}.apk",
        created_at=datetime.fromtimestamp(ns / 1_000_000_000, tz=timezone.utc),
    )


def _template_id_for(name: str) -> TemplateId | None:
    """Parse a stored blob name back into its ``TemplateId``."""
    match = _TEMPLATE_NAME.match(name)
    if match is None:
        return None
    return _template_id_from_ns(int(match.group(1)))


class TemplateRegistry:
    """
    Current template plus upload history, backed by a directory.

    Parameters
    ----------
    templates_dir : Directory owned exclusively by this registry.  Created
                    if missing.
    """

    def __init__(self, templates_dir: Path) -> None:
        self._dir = Path(templates_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._promote_lock = threading.Lock()
        self._name_lock = threading.Lock()
        self._last_ns = 0
        self._current: tuple[TemplateId, bytes] | None = self._load_current()

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def _load_current(self) -> tuple[TemplateId, bytes] | None:
        """Restore the active template from disk after a restart."""
        pointer = self._dir / CURRENT_POINTER
        template_id: TemplateId | None = None

        if pointer.is_file():
            template_id = _template_id_for(pointer.read_text(encoding="utf-8").strip())
            if template_id is None or not (self._dir / template_id.name).is_file():
                logger.warning("Ignoring stale template pointer in %s", pointer)
                template_id = None

        if template_id is None:
            history = self.list()
            if not history:
                return None
            template_id = history[0]

        logger.info("Restored current template %s", template_id.name)
        return template_id, (self._dir / template_id.name).read_bytes()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _next_id(self) -> TemplateId:
        """Return a fresh id whose timestamp is strictly increasing."""
        with self._name_lock:
            ns = max(time.time_ns(), self._last_ns + 1)
            self._last_ns = ns
        return _template_id_from_ns(ns)

    def set_current(self, data: bytes) -> TemplateId:
        """
        Store *data* as a new template and make it current.

        Returns
        -------
        TemplateId : Identity of the stored blob.

        Raises
        ------
        PersistenceFailure
            If the blob or pointer cannot be written.  The previous current
            template stays active.
        """
        template_id = self._next_id()
        name = template_id.name

        try:
            _atomic_write(self._dir, name, data)
        except OSError as exc:
            raise PersistenceFailure(f"Failed to store template {name}: {exc}") from exc

        with self._promote_lock:
            try:
                _atomic_write(self._dir, CURRENT_POINTER, name.encode("utf-8"))
            except OSError as exc:
                raise PersistenceFailure(
                    f"Stored template {name} but could not promote it: {exc}"
                ) from exc
            with self._lock:
                self._current = (template_id, data)

        logger.info("Template %s is now current (%d bytes)", name, len(data))
        return template_id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_current(self) -> bytes:
        """
        Return the active template's bytes.

        Raises
        ------
        NoTemplateAvailable
            If no template has ever been uploaded.
        """
        with self._lock:
            snapshot = self._current
        if snapshot is None:
            raise NoTemplateAvailable(
                "No APK template found on server. Upload via admin panel first."
            )
        return snapshot[1]

    def current_id(self) -> TemplateId | None:
        with self._lock:
            snapshot = self._current
        return None if snapshot is None else snapshot[0]

    def list(self) -> list[TemplateId]:
        """Return every stored template, most recent first."""
        ids = [
            template_id
            for template_id in (_template_id_for(p.name) for p in self._dir.glob("template_*.apk"))
            if template_id is not None
        ]
        return sorted(ids, key=lambda t: (t.created_at, t.name), reverse=True)
