"""
app/schema.py
-----------------------------------------------------------------------------
Pydantic v2 models for the APK Template Builder: the engine's domain records
and every request / response object in the HTTP API.

Design principles
-----------------
• Keep models thin – no business logic here beyond field normalisation.
• Every HTTP-facing field has a ``description`` so FastAPI's auto-generated
  OpenAPI UI is immediately useful.
• Labels are normalised on construction so every downstream consumer
  (artifact naming, ledger) sees the same safe value.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_TARGET_ENTRY_PATH: str = "assets/www/index.html"

MAX_REQUESTER_LABEL: int = 64
MAX_PROJECT_LABEL: int = 50
DEFAULT_REQUESTER_LABEL: str = "anon"
DEFAULT_PROJECT_LABEL: str = "rapz-app"

_UNSAFE_PROJECT_CHARS = re.compile(r"[^A-Za-z0-9_\-]")


# -----------------------------------------------------------------------------
# Label normalisation
# -----------------------------------------------------------------------------


def sanitize_requester_label(raw: str | None) -> str:
    """Strip and truncate the requester label, defaulting to ``anon``."""
    label = (raw or "").strip()[:MAX_REQUESTER_LABEL]
    return label or DEFAULT_REQUESTER_LABEL


def sanitize_project_label(raw: str | None) -> str:
    """
    Map the project label onto ``[A-Za-z0-9_-]`` and truncate it.

    The result becomes the prefix of the artifact filename, so anything
    outside the safe set (spaces, dots, slashes) is replaced with ``-``.
    """
    label = _UNSAFE_PROJECT_CHARS.sub("-", (raw or "").strip())[:MAX_PROJECT_LABEL]
    return label or DEFAULT_PROJECT_LABEL


# -----------------------------------------------------------------------------
# Engine records
# -----------------------------------------------------------------------------


class PayloadSource(str, Enum):
    """How the HTML reached the server."""

    PASTED = "pasted"
    FILE = "file"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class ValidPayload(BaseModel):
    """A payload that passed the content validator."""

    model_config = ConfigDict(frozen=True)

    text: str
    content: bytes
    source: PayloadSource


class TemplateId(BaseModel):
    """Identity of one uploaded template blob."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Stored filename, e.g. 'template_1760000000000000000.apk'.")
    created_at: datetime = Field(..., description="UTC upload completion time.")


class GenerationRequest(BaseModel):
    """
    Everything the engine needs to produce one artifact.

    The boundary layer extracts these fields from whatever transport carries
    them (multipart form, JSON, CLI).  ``target_entry_path`` is checked by the
    archive rewriter, not here, so that a bad path is reported as
    ``InvalidPath`` rather than a schema error.
    """

    requester_label: str = Field(default=DEFAULT_REQUESTER_LABEL)
    project_label: str = Field(default=DEFAULT_PROJECT_LABEL)
    target_entry_path: str = Field(default=DEFAULT_TARGET_ENTRY_PATH)
    payload: bytes = Field(default=b"")
    payload_source: PayloadSource = Field(default=PayloadSource.PASTED)
    filename: str | None = Field(
        default=None,
        description="Original filename for file uploads (used for the extension check).",
    )

    @field_validator("requester_label", mode="before")
    @classmethod
    def _clean_requester(cls, v: object) -> str:
        return sanitize_requester_label(None if v is None else str(v))

    @field_validator("project_label", mode="before")
    @classmethod
    def _clean_project(cls, v: object) -> str:
        return sanitize_project_label(None if v is None else str(v))

    @field_validator("target_entry_path", mode="before")
    @classmethod
    def _default_path(cls, v: object) -> str:
        """Fall back to the default entry when the field is blank."""
        if v is None or not str(v).strip():
            return DEFAULT_TARGET_ENTRY_PATH
        return str(v).strip()


class ArtifactRef(BaseModel):
    """A generated package, retrievable by ``name`` until ``expires_at``."""

    model_config = ConfigDict(frozen=True)

    name: str
    created_at: datetime
    expires_at: datetime
    size_bytes: int = Field(..., ge=0)


class LedgerEntry(BaseModel):
    """One generation attempt.  Append-only; never updated after writing."""

    id: str
    requester_label: str
    project_label: str
    target_entry_path: str
    artifact_name: str | None = None
    timestamp: datetime
    outcome: Outcome
    failure_cause: str | None = None


class LedgerCounts(BaseModel):
    success: int = Field(default=0, ge=0)
    failure: int = Field(default=0, ge=0)


# -----------------------------------------------------------------------------
# HTTP responses
# -----------------------------------------------------------------------------


class HealthResponse(BaseModel):
    ok: bool = True


class TemplateUploadResponse(BaseModel):
    ok: bool = True
    message: str = Field(default="template uploaded")
    filename: str = Field(..., description="Stored template name.")
    template: TemplateId


class TemplateListResponse(BaseModel):
    ok: bool = True
    templates: list[str] = Field(
        default_factory=list,
        description="Template names, most recent first.",
    )
    current: str | None = Field(
        default=None,
        description="Name of the template new artifacts are built from.",
    )


class GenerateResponse(BaseModel):
    ok: bool = True
    message: str = Field(default="APK generated")
    download_url: str = Field(
        ...,
        description="Relative URL the artifact can be downloaded from until it expires.",
    )
    artifact: ArtifactRef


class ArtifactListResponse(BaseModel):
    ok: bool = True
    artifacts: list[ArtifactRef] = Field(default_factory=list)


class LedgerResponse(BaseModel):
    ok: bool = True
    entries: list[LedgerEntry] = Field(
        default_factory=list,
        description="Generation attempts, newest first.",
    )
    counts: LedgerCounts
