"""Shared fixtures for the APK Template Builder test suite."""

from __future__ import annotations

import dataclasses
import io
import os
import tempfile
import zipfile
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import pytest

# Point the import-time engine in app.main at a scratch directory so the
# suite never writes templates/ or generated/ into the working tree.
_SCRATCH = Path(tempfile.mkdtemp(prefix="apk-builder-tests-"))
os.environ.setdefault("TEMPLATES_DIR", str(_SCRATCH / "templates"))
os.environ.setdefault("GENERATED_DIR", str(_SCRATCH / "generated"))
os.environ.setdefault("LEDGER_FILE", str(_SCRATCH / "ledger.jsonl"))

from fastapi.testclient import TestClient  # noqa: E402

from app.artifact_manager import ArtifactManager  # noqa: E402
from app.engine import GenerationEngine  # noqa: E402
from app.ledger import GenerationLedger, MemoryLedgerStore  # noqa: E402
from app.template_registry import TemplateRegistry  # noqa: E402

ADMIN_PASS = "test-admin-pass"


def build_zip(entries: dict[str, bytes], *, comment: bytes = b"") -> bytes:
    """Build an in-memory zip with a mix of stored and deflated entries.

    ``.arsc`` and ``.png`` entries are stored uncompressed, as aapt does for
    real APKs; everything else is deflated.
    """
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, mode="w") as zf:
        zf.comment = comment
        for name, data in entries.items():
            info = zipfile.ZipInfo(filename=name, date_time=(2024, 5, 17, 12, 30, 4))
            if name.endswith((".arsc", ".png")):
                info.compress_type = zipfile.ZIP_STORED
            else:
                info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = 0o100755 << 16 if name.endswith(".so") else 0o100600 << 16
            zf.writestr(info, data)
    return buffer.getvalue()


class FakeClock:
    """Manually advanced UNIX clock for expiry tests."""

    def __init__(self, start: float = 1_760_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def make_zip():
    return build_zip


@pytest.fixture()
def new_html() -> bytes:
    return b"<!doctype html><html><body>new</body></html>"


@pytest.fixture()
def template_entries() -> dict[str, bytes]:
    return {
        "AndroidManifest.xml": b"\x03\x00\x08\x00binary-manifest",
        "classes.dex": b"dex\n035\x00" + bytes(range(256)) * 4,
        "resources.arsc": b"\x02\x00\x0c\x00" + b"\x00" * 64,
        "res/drawable/icon.png": b"\x89PNG\r\n\x1a\nfake-png-data",
        "lib/arm64-v8a/libapp.so": b"\x7fELF" + b"\x01" * 128,
        "assets/www/index.html": b"old",
        "assets/www/app.js": b"console.log('hi');",
        "META-INF/MANIFEST.MF": b"Manifest-Version: 1.0\r\n",
    }


@pytest.fixture()
def template_bytes(template_entries: dict[str, bytes]) -> bytes:
    return build_zip(template_entries, comment=b"template comment")


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def artifacts(tmp_path: Path, clock: FakeClock) -> Iterator[ArtifactManager]:
    manager = ArtifactManager(tmp_path / "generated", retention_seconds=3600, clock=clock)
    yield manager
    manager.shutdown()


@pytest.fixture()
def ledger() -> GenerationLedger:
    return GenerationLedger(MemoryLedgerStore())


@pytest.fixture()
def registry(tmp_path: Path) -> TemplateRegistry:
    return TemplateRegistry(tmp_path / "templates")


@pytest.fixture()
def engine(
    registry: TemplateRegistry,
    artifacts: ArtifactManager,
    ledger: GenerationLedger,
) -> GenerationEngine:
    return GenerationEngine(registry=registry, artifacts=artifacts, ledger=ledger)


@pytest.fixture()
def client(engine: GenerationEngine) -> Iterator[TestClient]:
    """FastAPI test client wired to the tmp-path engine."""
    import app.main as main_module

    test_settings = dataclasses.replace(main_module.settings, admin_pass=ADMIN_PASS)
    with (
        patch.object(main_module, "engine", engine),
        patch.object(main_module, "settings", test_settings),
    ):
        yield TestClient(main_module.app)


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    return {"x-admin-pass": ADMIN_PASS}
