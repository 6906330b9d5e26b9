"""
app/engine.py
-----------------------------------------------------------------------------
The artifact-generation engine: the one object route handlers talk to.

Flow for a generation request
-----------------------------
::

    check size ─► validate payload ─► normalise path ─► read current template
        ─► rewrite archive ─► persist artifact ─► record ledger entry

Size, validation and path checks run before the template is read, so a bad
request never touches storage.  Every failure, whatever its type, appends
exactly one failure entry to the ledger and is then re-raised unchanged.
A ledger write error is logged and never replaces the generation result;
an artifact that was created stays fetchable.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from pathlib import Path

from app.archive_rewriter import ensure_readable, normalize_entry_path, rewrite
from app.artifact_manager import ArtifactManager
from app.config import Settings
from app.content_validator import validate_payload
from app.errors import EngineError, PayloadTooLarge
from app.ledger import GenerationLedger, JsonlLedgerStore
from app.schema import (
    ArtifactRef,
    GenerationRequest,
    LedgerCounts,
    LedgerEntry,
    Outcome,
    TemplateId,
)
from app.template_registry import TemplateRegistry

logger = logging.getLogger(__name__)


def _entry_id(now: datetime) -> str:
    return f"{int(now.timestamp() * 1000)}_{secrets.token_hex(3)}"


class GenerationEngine:
    """
    Compose the registry, rewriter, artifact manager and ledger.

    Parameters
    ----------
    registry  : Source of the current template.
    artifacts : Owner of generated packages.
    ledger    : Outcome record.
    max_payload_bytes : Largest accepted HTML payload.  ``None`` disables
                        the check.
    """

    def __init__(
        self,
        registry: TemplateRegistry,
        artifacts: ArtifactManager,
        ledger: GenerationLedger,
        *,
        max_payload_bytes: int | None = None,
    ) -> None:
        self.registry = registry
        self.artifacts = artifacts
        self.ledger = ledger
        self.max_payload_bytes = max_payload_bytes

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def upload_template(self, data: bytes) -> TemplateId:
        """
        Store *data* as the new current template.

        Raises
        ------
        MalformedContainer
            If *data* is empty or not a readable zip archive.
        PersistenceFailure
            If the registry cannot store it.
        """
        ensure_readable(data)
        return self.registry.set_current(data)

    def list_templates(self) -> list[TemplateId]:
        return self.registry.list()

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate_artifact(self, request: GenerationRequest) -> ArtifactRef:
        """
        Build, store and record one artifact.

        Returns
        -------
        ArtifactRef : The stored artifact.

        Raises
        ------
        PayloadTooLarge, InvalidPayload, InvalidPath, NoTemplateAvailable,
        MalformedContainer, PersistenceFailure
            Re-raised after the failure has been recorded.
        """
        try:
            self._check_payload_size(request.payload)
            payload = validate_payload(
                request.payload,
                source=request.payload_source,
                filename=request.filename,
            )
            target = normalize_entry_path(request.target_entry_path)
            template = self.registry.get_current()
            container = rewrite(template, target, payload.content)
            ref = self.artifacts.create(container, request.project_label)
        except EngineError as exc:
            logger.info(
                "Generation for %s/%s failed: %s",
                request.requester_label,
                request.project_label,
                exc.cause(),
            )
            self._record(request, outcome=Outcome.FAILURE, failure_cause=exc.cause())
            raise
        except Exception as exc:
            logger.exception(
                "Unexpected error generating for %s/%s",
                request.requester_label,
                request.project_label,
            )
            self._record(
                request,
                outcome=Outcome.FAILURE,
                failure_cause=f"{type(exc).__name__}: {exc}",
            )
            raise

        self._record(request, outcome=Outcome.SUCCESS, artifact_name=ref.name)
        return ref

    def _check_payload_size(self, payload: bytes) -> None:
        if self.max_payload_bytes is not None and len(payload) > self.max_payload_bytes:
            raise PayloadTooLarge(
                f"Payload size ({len(payload):,} bytes) exceeds the "
                f"{self.max_payload_bytes:,}-byte limit."
            )

    def _record(
        self,
        request: GenerationRequest,
        *,
        outcome: Outcome,
        artifact_name: str | None = None,
        failure_cause: str | None = None,
    ) -> None:
        now = datetime.now(timezone.utc)
        entry = LedgerEntry(
            id=_entry_id(now),
            requester_label=request.requester_label,
            project_label=request.project_label,
            target_entry_path=request.target_entry_path,
            artifact_name=artifact_name,
            timestamp=now,
            outcome=outcome,
            failure_cause=failure_cause,
        )
        try:
            self.ledger.record(entry)
        except Exception:
            # The caller still gets the real generation outcome.
            logger.exception("Could not record ledger entry %s (%s)", entry.id, outcome.value)

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def fetch_artifact(self, name: str) -> bytes:
        return self.artifacts.fetch(name)

    def artifact_path(self, name: str) -> Path:
        return self.artifacts.path_for(name)

    def list_artifacts(self) -> list[ArtifactRef]:
        return self.artifacts.active()

    def remove_artifact(self, name: str) -> bool:
        return self.artifacts.expire(name)

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def read_ledger(self) -> tuple[list[LedgerEntry], LedgerCounts]:
        return self.ledger.read_all(), self.ledger.aggregate_counts()


def build_engine(settings: Settings) -> GenerationEngine:
    """Wire the default file-backed components from *settings*."""
    return GenerationEngine(
        registry=TemplateRegistry(settings.templates_dir),
        artifacts=ArtifactManager(settings.generated_dir, settings.cleanup_seconds),
        ledger=GenerationLedger(JsonlLedgerStore(settings.ledger_file)),
        max_payload_bytes=settings.max_upload_size,
    )
