"""Process-wide collaborators, built once and handed to the HTTP layer."""

from __future__ import annotations

from dataclasses import dataclass, field

from medassist.core.config import Settings
from medassist.core.logging import get_logger
from medassist.services.chat import ChatOrchestrator, ChatStreamRegistry
from medassist.services.embedder import EmbeddingProvider, get_embedding_provider
from medassist.services.file_storage import FileStorage, LocalFileStorage
from medassist.services.health_records import HealthRecordStore, get_health_record_store
from medassist.services.ingestion import IngestionService
from medassist.services.llm import ChatCompletionClient
from medassist.services.section_store import SectionStore, get_section_store

logger = get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    store: SectionStore
    storage: FileStorage
    embeddings: EmbeddingProvider
    health_records: HealthRecordStore
    llm: ChatCompletionClient
    ingestion: IngestionService
    chat: ChatOrchestrator
    streams: ChatStreamRegistry = field(default_factory=ChatStreamRegistry)

    async def start(self) -> None:
        await self.store.connect()
        await self.health_records.connect()
        logger.info(
            "Services started (embeddings=%s/%s, llm=%s)",
            self.embeddings.model_name,
            self.embeddings.dimensions,
            self.llm.model,
        )

    async def close(self) -> None:
        await self.llm.aclose()
        await self.health_records.close()
        await self.store.close()
        logger.info("Services closed")


def build_services(
    settings: Settings,
    *,
    embeddings: EmbeddingProvider | None = None,
    llm: ChatCompletionClient | None = None,
) -> Services:
    """Wire every collaborator from settings. Explicit overrides win."""
    embeddings = embeddings or get_embedding_provider(settings)
    if embeddings.dimensions != settings.embedding_dim:
        raise ValueError(
            f"Embedding provider yields {embeddings.dimensions}-dim vectors, "
            f"EMBEDDING_DIM is {settings.embedding_dim}."
        )
    llm = llm or ChatCompletionClient.from_settings(settings)

    store = get_section_store(settings.database_url, embedding_dim=settings.embedding_dim)
    storage = LocalFileStorage(settings.storage_dir)
    health_records = get_health_record_store(settings.database_url)

    return Services(
        settings=settings,
        store=store,
        storage=storage,
        embeddings=embeddings,
        health_records=health_records,
        llm=llm,
        ingestion=IngestionService(
            store=store,
            storage=storage,
            embeddings=embeddings,
            max_section_length=settings.max_section_length,
            embed_concurrency=settings.embed_concurrency,
        ),
        chat=ChatOrchestrator(
            embeddings=embeddings,
            store=store,
            health_records=health_records,
            llm=llm,
            match_threshold=settings.match_threshold,
            match_limit=settings.match_limit,
        ),
    )
