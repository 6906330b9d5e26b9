"""
app/main.py
-----------------------------------------------------------------------------
FastAPI application entrypoint for the APK Template Builder.

This module is a **thin routing layer** — each route handler extracts
fields from the request, calls the generation engine, and maps typed engine
errors onto HTTP status codes.  All business logic lives in dedicated
modules:

Domain modules
~~~~~~~~~~~~~~
- ``app.engine``             – Orchestrates a generation and records its outcome.
- ``app.content_validator``  – HTML sanity checks for submitted payloads.
- ``app.template_registry``  – Current template pointer and upload history.
- ``app.archive_rewriter``   – Zip entry replacement.
- ``app.artifact_manager``   – Generated APK storage and timed expiry.
- ``app.ledger``             – Append-only generation ledger and counters.
- ``app.schema``             – Pydantic v2 request / response models.
- ``app.config``             – Environment-driven settings.

Run with:
    uvicorn app.main:app --reload --host 127.0.0.1 --port 3000

Endpoints
---------
GET    /api/health                      → liveness check
POST   /api/admin/upload-template       → store a new APK template (admin)
GET    /api/admin/templates             → list stored templates (admin)
GET    /api/admin/db                    → ledger entries and counters (admin)
GET    /api/admin/artifacts             → live generated artifacts (admin)
DELETE /api/admin/artifacts/{name}      → remove an artifact early (admin)
POST   /api/create-apk                  → build an APK from pasted or uploaded HTML
GET    /generated/{name}                → download a generated APK until it expires

Admin endpoints accept the password in the ``x-admin-pass`` header or the
``pass`` query parameter.

Architecture notes
------------------
- Engine calls do blocking file I/O and zip work.  Sync handlers run in
  FastAPI's threadpool automatically; async handlers (those that ``await``
  an upload) hand the engine call to ``run_in_threadpool`` so the event
  loop is never blocked.
- Downloads go through the artifact manager rather than a static mount so
  an expired artifact is never served, even if its timer has not fired.
"""

from __future__ import annotations

import secrets
import tomllib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, File, Form, Header, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from starlette.concurrency import run_in_threadpool

from app.config import load_settings
from app.engine import build_engine
from app.errors import (
    ArtifactNotFound,
    EngineError,
    InvalidPath,
    InvalidPayload,
    MalformedContainer,
    NoTemplateAvailable,
    PayloadTooLarge,
    PersistenceFailure,
)
from app.schema import (
    ArtifactListResponse,
    GenerateResponse,
    GenerationRequest,
    HealthResponse,
    LedgerResponse,
    PayloadSource,
    TemplateListResponse,
    TemplateUploadResponse,
)

# -----------------------------------------------------------------------------
# Bootstrap
# -----------------------------------------------------------------------------

_HERE = Path(__file__).parent

settings = load_settings()
engine = build_engine(settings)

# Read version from pyproject.toml (single source of truth).
_PYPROJECT = _HERE.parent / "pyproject.toml"
with open(_PYPROJECT, "rb") as _f:
    _APP_VERSION: str = tomllib.load(_f)["project"]["version"]

APK_MEDIA_TYPE = "application/vnd.android.package-archive"

# Engine error → HTTP status.  Looked up along the exception's MRO so
# subclasses (e.g. LedgerWriteError) inherit their parent's status.
_ERROR_STATUS: dict[type[EngineError], int] = {
    PayloadTooLarge: 413,
    InvalidPayload: 400,
    InvalidPath: 400,
    MalformedContainer: 422,
    NoTemplateAvailable: 503,
    ArtifactNotFound: 404,
    PersistenceFailure: 500,
}


def _http_error(exc: EngineError) -> HTTPException:
    """Translate a typed engine error into an ``HTTPException``."""
    for cls in type(exc).__mro__:
        if cls in _ERROR_STATUS:
            return HTTPException(status_code=_ERROR_STATUS[cls], detail=exc.cause())
    return HTTPException(status_code=500, detail=exc.cause())


def _require_admin(header_pass: str | None, query_pass: str | None) -> None:
    """Raise 401 unless the header or query password matches ``ADMIN_PASS``."""
    supplied = header_pass or query_pass or ""
    if not secrets.compare_digest(supplied.encode("utf-8"), settings.admin_pass.encode("utf-8")):
        raise HTTPException(status_code=401, detail="unauthorized")


def _check_size(data: bytes) -> None:
    if len(data) > settings.max_upload_size:
        raise HTTPException(
            status_code=413,
            detail=(
                f"Upload size ({len(data):,} bytes) exceeds the "
                f"{settings.max_upload_size:,}-byte limit."
            ),
        )


# -----------------------------------------------------------------------------
# FastAPI app + middleware
# -----------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Re-arm expiry for leftover artifacts on startup; cancel timers on shutdown."""
    await run_in_threadpool(engine.artifacts.recover)
    yield
    engine.artifacts.shutdown()


app = FastAPI(
    title="APK Template Builder",
    description=(
        "Builds an Android package from an uploaded template by replacing "
        "one bundled HTML entry with user-supplied content."
    ),
    version=_APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@app.get("/api/health", response_model=HealthResponse, summary="Liveness check")
def health() -> HealthResponse:
    return HealthResponse()


# -----------------------------------------------------------------------------
# Admin routes
# -----------------------------------------------------------------------------


@app.post(
    "/api/admin/upload-template",
    response_model=TemplateUploadResponse,
    summary="Upload a new APK template and make it current",
)
async def upload_template(
    template: UploadFile | None = File(default=None),
    x_admin_pass: str | None = Header(default=None),
    pass_: str | None = Query(default=None, alias="pass"),
) -> TemplateUploadResponse:
    """
    Store the uploaded APK as the template for all subsequent generations.

    The archive is checked for readability before it is stored, so a
    corrupted upload never replaces a working template.

    Raises
    ------
    HTTPException(401) : Wrong or missing admin password.
    HTTPException(400) : No file in the request.
    HTTPException(413) : Upload exceeds ``MAX_UPLOAD_SIZE``.
    HTTPException(422) : The file is not a readable zip archive.
    HTTPException(500) : The template could not be written.
    """
    _require_admin(x_admin_pass, pass_)
    if template is None:
        raise HTTPException(status_code=400, detail="no file uploaded")

    data = await template.read()
    _check_size(data)

    try:
        template_id = await run_in_threadpool(engine.upload_template, data)
    except EngineError as exc:
        raise _http_error(exc) from exc

    return TemplateUploadResponse(filename=template_id.name, template=template_id)


@app.get(
    "/api/admin/templates",
    response_model=TemplateListResponse,
    summary="List stored templates, most recent first",
)
def list_templates(
    x_admin_pass: str | None = Header(default=None),
    pass_: str | None = Query(default=None, alias="pass"),
) -> TemplateListResponse:
    _require_admin(x_admin_pass, pass_)
    current = engine.registry.current_id()
    return TemplateListResponse(
        templates=[t.name for t in engine.list_templates()],
        current=current.name if current is not None else None,
    )


@app.get(
    "/api/admin/db",
    response_model=LedgerResponse,
    summary="Ledger entries (newest first) and outcome counters",
)
def read_ledger(
    x_admin_pass: str | None = Header(default=None),
    pass_: str | None = Query(default=None, alias="pass"),
) -> LedgerResponse:
    _require_admin(x_admin_pass, pass_)
    entries, counts = engine.read_ledger()
    return LedgerResponse(entries=entries, counts=counts)


@app.get(
    "/api/admin/artifacts",
    response_model=ArtifactListResponse,
    summary="List generated artifacts that have not expired",
)
def list_artifacts(
    x_admin_pass: str | None = Header(default=None),
    pass_: str | None = Query(default=None, alias="pass"),
) -> ArtifactListResponse:
    _require_admin(x_admin_pass, pass_)
    return ArtifactListResponse(artifacts=engine.list_artifacts())


@app.delete(
    "/api/admin/artifacts/{name}",
    summary="Remove a generated artifact before its retention window ends",
)
def remove_artifact(
    name: str,
    x_admin_pass: str | None = Header(default=None),
    pass_: str | None = Query(default=None, alias="pass"),
) -> dict:
    """Idempotent: removing an unknown or already-expired name still returns 200."""
    _require_admin(x_admin_pass, pass_)
    removed = engine.remove_artifact(name)
    return {"ok": True, "removed": removed}


# -----------------------------------------------------------------------------
# POST /api/create-apk
# -----------------------------------------------------------------------------


@app.post(
    "/api/create-apk",
    response_model=GenerateResponse,
    summary="Build an APK from pasted HTML or an uploaded .html file",
)
async def create_apk(
    username: str | None = Form(default=None),
    project_name: str | None = Form(default=None, alias="projectName"),
    replace_path: str | None = Form(default=None, alias="replacePath"),
    text: str | None = Form(default=None),
    file: UploadFile | None = File(default=None),
) -> GenerateResponse:
    """
    Core endpoint: replace ``replacePath`` inside the current template with
    the submitted HTML and return a download link.

    An uploaded file takes precedence over pasted ``text``.  File uploads
    must be ``.html`` or ``.htm``.

    Returns
    -------
    GenerateResponse with the artifact reference and its download URL.  The
    URL stops working once the retention window elapses.

    Raises
    ------
    HTTPException(400) : Missing, non-HTML, or wrongly-typed content; unsafe path.
    HTTPException(413) : Upload exceeds ``MAX_UPLOAD_SIZE``.
    HTTPException(422) : The current template is not a readable archive.
    HTTPException(503) : No template has been uploaded yet.
    HTTPException(500) : The artifact could not be written.
    """
    if file is not None and file.filename:
        payload = await file.read()
        source = PayloadSource.FILE
        filename: str | None = file.filename
    elif text:
        payload = text.encode("utf-8")
        source = PayloadSource.PASTED
        filename = None
    else:
        payload = b""
        source = PayloadSource.PASTED
        filename = None

    request = GenerationRequest(
        requester_label=username,
        project_label=project_name,
        target_entry_path=replace_path or settings.default_replace_path,
        payload=payload,
        payload_source=source,
        filename=filename,
    )

    try:
        ref = await run_in_threadpool(engine.generate_artifact, request)
    except EngineError as exc:
        raise _http_error(exc) from exc

    return GenerateResponse(download_url=f"/generated/{ref.name}", artifact=ref)


# -----------------------------------------------------------------------------
# GET /generated/{name}
# -----------------------------------------------------------------------------


@app.get("/generated/{name}", summary="Download a generated APK")
def download_artifact(name: str) -> FileResponse:
    """
    Stream the artifact file as an attachment.

    Raises
    ------
    HTTPException(404) : Unknown, removed, or expired artifact.
    """
    try:
        path = engine.artifact_path(name)
    except EngineError as exc:
        raise _http_error(exc) from exc

    return FileResponse(path, media_type=APK_MEDIA_TYPE, filename=name)
