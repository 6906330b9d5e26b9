"""
app/errors.py
-----------------------------------------------------------------------------
Typed failures raised by the generation engine.

Each class carries a short ``code`` string.  The code is what lands in the
ledger's ``failure_cause`` field and in HTTP error bodies, so it must stay
stable across releases.  Route handlers in ``main.py`` translate these into
``HTTPException`` instances via a status table; nothing in the core knows
about HTTP.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for every failure the engine reports to its callers."""

    code: str = "EngineError"

    def cause(self) -> str:
        """Return ``"<code>: <message>"`` for the ledger."""
        message = str(self)
        return f"{self.code}: {message}" if message else self.code


class InvalidPayload(EngineError):
    """The submitted content failed the HTML sanity checks."""

    code = "InvalidPayload"


class InvalidPath(EngineError):
    """The target entry path is empty, absolute, or escapes the archive root."""

    code = "InvalidPath"


class MalformedContainer(EngineError):
    """The template bytes cannot be read as a zip archive."""

    code = "MalformedContainer"


class NoTemplateAvailable(EngineError):
    """No template has ever been uploaded."""

    code = "NoTemplateAvailable"


class PersistenceFailure(EngineError):
    """A storage read or write failed."""

    code = "PersistenceFailure"


class LedgerWriteError(PersistenceFailure):
    """The ledger store rejected an append."""

    code = "LedgerWriteError"


class ArtifactNotFound(EngineError):
    """The artifact name is unknown, expired, or already removed."""

    code = "ArtifactNotFound"


class PayloadTooLarge(InvalidPayload):
    """The submitted content exceeds the configured size limit."""

    code = "PayloadTooLarge"
