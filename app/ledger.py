"""
app/ledger.py
-----------------------------------------------------------------------------
Append-only record of generation attempts plus success / failure counters.

The ledger is split into a storage interface and a thin counter layer:

- ``LedgerStore`` – anything with ``append(entry)`` and ``read_all()``.
  ``JsonlLedgerStore`` writes one compact JSON object per line, readable
  with ``jq`` or pandas.  ``MemoryLedgerStore`` keeps entries in a list.
- ``GenerationLedger`` – counts outcomes and surfaces store failures as
  ``LedgerWriteError`` so the caller can log them without losing the
  generation result.

Durability
----------
``JsonlLedgerStore.append`` flushes and ``fsync``s before returning, so an
entry reported as recorded survives a crash.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from app.errors import LedgerWriteError
from app.schema import LedgerCounts, LedgerEntry, Outcome

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Stores
# -----------------------------------------------------------------------------


class LedgerStore(Protocol):
    def append(self, entry: LedgerEntry) -> None: ...

    def read_all(self) -> list[LedgerEntry]: ...


class JsonlLedgerStore:
    """Ledger backed by a JSONL file.  Entries are stored oldest first."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def append(self, entry: LedgerEntry) -> None:
        line = entry.model_dump_json() + "\n"
        with self._lock:
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(line)
                fh.flush()
                os.fsync(fh.fileno())

    def read_all(self) -> list[LedgerEntry]:
        if not self._path.exists():
            return []
        entries: list[LedgerEntry] = []
        with self._lock:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                entries.append(LedgerEntry.model_validate_json(line))
            except ValidationError as exc:
                logger.warning(
                    "Skipping unreadable ledger line %d in %s: %s", lineno, self._path, exc
                )
        return entries


class MemoryLedgerStore:
    """Ledger kept in process memory.  Used by tests and throwaway instances."""

    def __init__(self) -> None:
        self._entries: list[LedgerEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: LedgerEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def read_all(self) -> list[LedgerEntry]:
        with self._lock:
            return list(self._entries)


# -----------------------------------------------------------------------------
# Ledger
# -----------------------------------------------------------------------------


class GenerationLedger:
    """
    Outcome counters on top of a ``LedgerStore``.

    Counters are seeded from the store when the ledger is built and then
    maintained in memory.  ``record`` bumps the matching counter exactly once
    per call, before the append is attempted, so a failed generation is
    counted even when the store is down.
    """

    def __init__(self, store: LedgerStore) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._counts = LedgerCounts()
        for entry in store.read_all():
            self._bump(entry.outcome)

    def _bump(self, outcome: Outcome) -> None:
        if outcome is Outcome.SUCCESS:
            self._counts.success += 1
        else:
            self._counts.failure += 1

    def record(self, entry: LedgerEntry) -> None:
        """
        Append *entry* and update the counters.

        Raises
        ------
        LedgerWriteError
            If the store rejects the append.  The counter has already been
            updated; the entry is not persisted.
        """
        with self._lock:
            self._bump(entry.outcome)
        try:
            self._store.append(entry)
        except OSError as exc:
            raise LedgerWriteError(f"Failed to append ledger entry {entry.id}: {exc}") from exc

    def read_all(self) -> list[LedgerEntry]:
        """Return every recorded entry, newest first."""
        return list(reversed(self._store.read_all()))

    def aggregate_counts(self) -> LedgerCounts:
        with self._lock:
            return self._counts.model_copy()
