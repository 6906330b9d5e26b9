"""
app/archive_rewriter.py
-----------------------------------------------------------------------------
Replace or insert a single entry inside a zip-structured container.

Why a dedicated module?
-----------------------
An APK is a zip archive.  Swapping the bundled web page means rewriting the
archive with one entry changed and every other entry left alone.  This is
the only place in the project that understands the container format; the
engine hands it bytes and gets bytes back.

Behaviour
---------
- Entries other than the target are copied with their original ``ZipInfo``
  (name, timestamp, compression method, attributes, extra field, comment)
  and their original decompressed content, in their original order.  The
  compressed stream itself is re-encoded by ``zlib``, so the *content* and
  *metadata* are identical while the compressed bytes may differ from the
  input if the original producer used a different deflate implementation.
- The target entry keeps its position but its metadata is reset to fixed
  engine defaults (see ``_target_info``).  A missing target is appended.
- Directory entries implied by a new path are not synthesised: zip readers
  resolve nested names without them.
- Output is deterministic.  No wall-clock value is written anywhere, so
  the same inputs always give byte-identical output.

The rewrite is in-memory; templates are bounded by the upload size limit.
"""

from __future__ import annotations

import io
import logging
import zipfile
import zlib

from app.errors import InvalidPath, MalformedContainer

logger = logging.getLogger(__name__)

# Fixed metadata for the replaced/inserted entry.  1980-01-01 is the zip
# epoch, the earliest representable DOS timestamp.
ENTRY_DATE_TIME: tuple[int, int, int, int, int, int] = (1980, 1, 1, 0, 0, 0)
ENTRY_PERMISSIONS: int = 0o644
ENTRY_COMPRESSION: int = zipfile.ZIP_DEFLATED

# Errors zipfile can raise while reading a damaged or exotic archive.
_READ_ERRORS = (
    zipfile.BadZipFile,
    zlib.error,
    EOFError,
    NotImplementedError,
    OSError,
    RuntimeError,  # encrypted entries
)


# -----------------------------------------------------------------------------
# Path handling
# -----------------------------------------------------------------------------


def normalize_entry_path(path: str) -> str:
    """
    Normalise an archive-internal path and reject anything unsafe.

    ``.`` and empty segments are collapsed (``assets//www/./index.html``
    becomes ``assets/www/index.html``).  Everything else that could address
    a location outside the archive root, or a directory rather than a file,
    is rejected.

    Raises
    ------
    InvalidPath
        For empty paths, absolute paths, backslashes, drive letters, NUL
        characters, trailing slashes, and ``..`` segments.
    """
    if not path or not path.strip():
        raise InvalidPath("Target entry path is empty.")
    if "\x00" in path:
        raise InvalidPath("Target entry path contains a NUL character.")
    if "\\" in path:
        raise InvalidPath(f"Target entry path '{path}' must use '/' separators.")
    if path.startswith("/"):
        raise InvalidPath(f"Target entry path '{path}' must be relative.")
    if len(path) >= 2 and path[1] == ":" and path[0].isalpha():
        raise InvalidPath(f"Target entry path '{path}' must not carry a drive letter.")
    if path.endswith("/"):
        raise InvalidPath(f"Target entry path '{path}' names a directory.")

    segments = [seg for seg in path.split("/") if seg not in ("", ".")]
    if any(seg == ".." for seg in segments):
        raise InvalidPath(f"Target entry path '{path}' contains a parent reference.")
    if not segments:
        raise InvalidPath(f"Target entry path '{path}' is empty after normalisation.")

    return "/".join(segments)


# -----------------------------------------------------------------------------
# Reading
# -----------------------------------------------------------------------------


def _open(container: bytes) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(container), mode="r")
    except _READ_ERRORS as exc:
        raise MalformedContainer(f"Container is not a readable zip archive: {exc}") from exc


def ensure_readable(container: bytes) -> None:
    """
    Raise ``MalformedContainer`` unless every entry in *container* can be read.

    ``ZipFile.testzip`` decompresses each member and checks its CRC, so this
    catches truncated or corrupted templates at upload time rather than at
    the first generation.
    """
    if not container:
        raise MalformedContainer("Container is empty.")
    with _open(container) as zf:
        try:
            bad = zf.testzip()
        except _READ_ERRORS as exc:
            raise MalformedContainer(f"Container entries cannot be read: {exc}") from exc
    if bad is not None:
        raise MalformedContainer(f"Container entry '{bad}' failed its CRC check.")


def list_entries(container: bytes) -> list[str]:
    """Return entry names in central-directory order."""
    with _open(container) as zf:
        return zf.namelist()


def read_entry(container: bytes, path: str) -> bytes:
    """Return the decompressed content of the entry at *path*."""
    name = normalize_entry_path(path)
    with _open(container) as zf:
        try:
            return zf.read(name)
        except KeyError as exc:
            raise MalformedContainer(f"Container has no entry '{name}'.") from exc
        except _READ_ERRORS as exc:
            raise MalformedContainer(f"Entry '{name}' cannot be read: {exc}") from exc


# -----------------------------------------------------------------------------
# Rewriting
# -----------------------------------------------------------------------------


def _target_info(name: str) -> zipfile.ZipInfo:
    """Build the fixed-metadata ``ZipInfo`` used for the replaced entry."""
    info = zipfile.ZipInfo(filename=name, date_time=ENTRY_DATE_TIME)
    info.compress_type = ENTRY_COMPRESSION
    info.create_system = 3  # Unix, so external_attr carries mode bits
    info.external_attr = (0o100000 | ENTRY_PERMISSIONS) << 16
    return info


def rewrite(container: bytes, target_entry_path: str, replacement: bytes) -> bytes:
    """
    Return a copy of *container* with *target_entry_path* set to *replacement*.

    Parameters
    ----------
    container         : Raw bytes of the template archive.
    target_entry_path : Archive-internal path, e.g. ``assets/www/index.html``.
                        Normalised before lookup.
    replacement       : New content for the entry.

    Returns
    -------
    bytes : The rewritten archive.

    Raises
    ------
    InvalidPath
        If the target path is unsafe (checked before the archive is opened).
    MalformedContainer
        If the archive or any of its entries cannot be read.
    """
    name = normalize_entry_path(target_entry_path)

    buffer = io.BytesIO()
    replaced = False

    with _open(container) as src:
        try:
            with zipfile.ZipFile(buffer, mode="w") as dst:
                dst.comment = src.comment
                for info in src.infolist():
                    if info.filename == name:
                        # Collapse duplicate records for the target into one,
                        # written where the first one sat.
                        if not replaced:
                            dst.writestr(_target_info(name), replacement)
                            replaced = True
                        continue
                    dst.writestr(info, src.read(info))

                if not replaced:
                    dst.writestr(_target_info(name), replacement)
        except _READ_ERRORS as exc:
            raise MalformedContainer(f"Container entries cannot be read: {exc}") from exc

    logger.debug(
        "%s entry %s (%d bytes)", "Replaced" if replaced else "Added", name, len(replacement)
    )
    return buffer.getvalue()
