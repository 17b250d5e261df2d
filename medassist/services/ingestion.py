"""Document ingestion: extract → normalize → chunk → persist → embed."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass

import numpy as np
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from medassist.core.errors import EmbeddingError, ExtractionError
from medassist.core.logging import get_logger
from medassist.models.documents import Document, EmbedReport, Section
from medassist.services.embedder import EmbeddingProvider
from medassist.services.extractors import resolve_format
from medassist.services.file_storage import FileStorage, object_path
from medassist.services.markdown import DEFAULT_MAX_SECTION_LENGTH, chunk_markdown, to_markdown
from medassist.services.section_store import SectionStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class IngestResult:
    document: Document
    sections: list[Section]


class IngestionService:
    def __init__(
        self,
        *,
        store: SectionStore,
        storage: FileStorage,
        embeddings: EmbeddingProvider,
        max_section_length: int = DEFAULT_MAX_SECTION_LENGTH,
        embed_concurrency: int = 4,
    ) -> None:
        self.store = store
        self.storage = storage
        self.embeddings = embeddings
        self.max_section_length = max_section_length
        self.embed_concurrency = max(1, embed_concurrency)
        self.retry_wait = wait_exponential_jitter(initial=1, max=30)

    async def upload_document(self, *, owner_id: str, filename: str, data: bytes) -> IngestResult:
        """Store an uploaded file, register the document and split it into sections.

        The extension is checked before anything is written. If processing
        fails for any reason the document row and stored object are removed
        again before the error propagates.

        Raises:
            UnsupportedFormatError: Unknown extension
            ExtractionError: File could not be parsed
        """
        resolve_format(filename)

        storage_path = object_path(owner_id, str(uuid.uuid4()), filename)
        await self.storage.save(storage_path, data)
        try:
            document = await self.store.create_document(
                name=filename,
                storage_path=storage_path,
                owner_id=owner_id,
            )
        except Exception:
            await self.storage.delete(storage_path)
            raise
        logger.info("Document %s: stored %s (%d bytes)", document.id, filename, len(data))

        try:
            sections = await self.process_document(document)
        except ExtractionError:
            await self._discard(document)
            raise
        except Exception as exc:
            logger.error("Document %s: processing failed - %s: %s", document.id, type(exc).__name__, exc)
            await self._discard(document)
            raise
        return IngestResult(document=document, sections=sections)

    async def process_document(self, document: Document) -> list[Section]:
        """Read the stored bytes and persist the document's sections."""
        fmt = resolve_format(document.storage_path)
        data = await self.storage.read(document.storage_path)

        loop = asyncio.get_running_loop()
        try:
            text = await loop.run_in_executor(None, fmt.extract, data)
        except ExtractionError as exc:
            exc.document_id = document.id
            logger.error("Document %s: extraction failed - %s", document.id, exc)
            raise

        markdown = to_markdown(text) if fmt.normalize else text
        drafts = chunk_markdown(markdown, max_section_length=self.max_section_length)
        logger.info("Document %s: parsed %d sections (%s)", document.id, len(drafts), fmt.name)
        if not drafts:
            logger.warning("Document %s: no text content extracted", document.id)
            return []

        sections = await self.store.insert_sections(document.id, drafts)
        logger.info("Document %s: inserted %d sections", document.id, len(sections))
        return sections

    async def embed_pending_sections(self, document_id: str | None = None) -> EmbedReport:
        """Embed every section whose embedding is still null.

        The candidate list is a snapshot; writes only land where the embedding
        is still null, so running this twice, or concurrently, is safe.

        Raises:
            EmbeddingError: One or more sections could not be embedded. The
                report on the exception tells how many succeeded.
        """
        pending = await self.store.sections_missing_embedding(document_id)
        report = EmbedReport(document_id=document_id, candidates=len(pending))
        if not pending:
            logger.info("Embedding pass (%s): nothing to do", document_id or "all")
            return report

        logger.info("Embedding pass (%s): %d sections", document_id or "all", len(pending))
        semaphore = asyncio.Semaphore(self.embed_concurrency)
        results = await asyncio.gather(
            *(self._embed_section(section, semaphore) for section in pending),
            return_exceptions=True,
        )

        for section, result in zip(pending, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                report.failed += 1
                report.errors.append(f"section {section.id}: {type(result).__name__}: {result}")
                logger.error("Section %s: embedding failed - %s", section.id, result)
            elif result:
                report.embedded += 1
            else:
                report.skipped += 1

        logger.info(
            "Embedding pass (%s): embedded=%d skipped=%d failed=%d",
            document_id or "all",
            report.embedded,
            report.skipped,
            report.failed,
        )
        if report.failed:
            raise EmbeddingError(
                f"{report.failed} of {report.candidates} sections failed to embed.",
                report=report,
            )
        return report

    async def embed_pending_with_retry(
        self,
        document_id: str | None = None,
        *,
        attempts: int = 3,
    ) -> EmbedReport:
        """Re-run the embedding pass on EmbeddingError; each retry only sees leftovers."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(EmbeddingError),
            stop=stop_after_attempt(attempts),
            wait=self.retry_wait,
            reraise=True,
        )
        return await retrying(self.embed_pending_sections, document_id)

    async def delete_document(self, document_id: str) -> Document | None:
        """Delete a document, its sections and its stored bytes."""
        document = await self.store.delete_document(document_id)
        if document is None:
            return None
        await self.storage.delete(document.storage_path)
        logger.info("Document %s: deleted", document_id)
        return document

    async def _embed_section(self, section: Section, semaphore: asyncio.Semaphore) -> bool:
        async with semaphore:
            loop = asyncio.get_running_loop()
            vector: np.ndarray = await loop.run_in_executor(
                None, self.embeddings.embed, section.content
            )
            written = await self.store.set_embedding(section.id, vector)
            if not written:
                logger.debug("Section %s: embedding already set, skipped", section.id)
            return written

    async def _discard(self, document: Document) -> None:
        await self.store.delete_document(document.id)
        await self.storage.delete(document.storage_path)
        logger.info("Document %s: discarded after failed processing", document.id)
