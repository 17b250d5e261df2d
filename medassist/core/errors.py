"""Error taxonomy shared by the ingestion and chat pipelines."""

from __future__ import annotations

from typing import Any


class MedAssistError(Exception):
    """Base class for pipeline errors surfaced to callers."""

    retryable: bool = False


class UnsupportedFormatError(MedAssistError):
    """The uploaded file's extension is not one of the accepted formats."""

    def __init__(self, extension: str) -> None:
        self.extension = extension
        shown = extension or "(none)"
        super().__init__(f"Unsupported file type '{shown}'.")


class ExtractionError(MedAssistError):
    """An archive or content stream could not be parsed into text."""

    def __init__(self, message: str, *, document_id: str | None = None) -> None:
        self.document_id = document_id
        super().__init__(message)


class EmbeddingError(MedAssistError):
    """The embedding model failed; safe to retry the whole pass."""

    retryable = True

    def __init__(self, message: str, *, report: Any = None) -> None:
        self.report = report
        super().__init__(message)


class MatchError(MedAssistError):
    """The similarity search could not be executed."""

    retryable = True


class CompletionError(MedAssistError):
    """The LLM call failed or was aborted."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        aborted: bool = False,
    ) -> None:
        self.status_code = status_code
        self.aborted = aborted
        super().__init__(message)
