"""Document/section persistence and cosine-similarity matching.

The null-embedding predicate is the only concurrency control: embedding
passes select sections whose embedding is null and write with a conditional
update, so overlapping passes can duplicate work but never overwrite a vector.
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Protocol, runtime_checkable

import numpy as np
import psycopg
from pgvector.psycopg import register_vector_async
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from medassist.core.errors import MatchError
from medassist.core.logging import get_logger
from medassist.models.documents import Document, Section, SectionDraft, SectionMatch

logger = get_logger(__name__)


@runtime_checkable
class SectionStore(Protocol):
    """Contract for the database collaborator that owns documents and sections."""

    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def create_document(self, *, name: str, storage_path: str, owner_id: str) -> Document:
        ...

    async def get_document(self, document_id: str) -> Document | None:
        ...

    async def delete_document(self, document_id: str) -> Document | None:
        """Delete a document and, by cascade, its sections."""
        ...

    async def insert_sections(self, document_id: str, drafts: list[SectionDraft]) -> list[Section]:
        ...

    async def list_sections(self, document_id: str) -> list[Section]:
        ...

    async def sections_missing_embedding(self, document_id: str | None = None) -> list[Section]:
        """Snapshot of sections whose embedding is still null."""
        ...

    async def set_embedding(self, section_id: int, vector: np.ndarray) -> bool:
        """Store a vector only if the section has none. Returns True if written."""
        ...

    async def upsert_embedding(self, section_id: int, vector: np.ndarray) -> bool:
        """Store or replace a section's vector. Returns False for unknown ids."""
        ...

    async def match_sections(
        self,
        query_vector: np.ndarray,
        *,
        threshold: float,
        limit: int,
        owner_id: str | None = None,
    ) -> list[SectionMatch]:
        ...


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Calculate cosine similarity between two vectors."""
    denom = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denom == 0.0:
        return 0.0
    return float(np.dot(a, b) / denom)


def _check_vector(vector: np.ndarray, dimensions: int) -> np.ndarray:
    array = np.asarray(vector, dtype=np.float32)
    if array.ndim != 1 or array.shape[0] != dimensions:
        raise ValueError(
            f"Embedding must be a {dimensions}-dim vector, got shape {array.shape}."
        )
    return array


# ---------------------------------------------------------------------------
# IN-MEMORY STORE (development / tests)
# ---------------------------------------------------------------------------


class InMemorySectionStore:
    """Process-local store with the same semantics as the PostgreSQL one.

    Every method runs without awaiting in between its check and its write, so
    the conditional update is atomic with respect to other coroutines.
    """

    def __init__(self, embedding_dim: int) -> None:
        self.embedding_dim = embedding_dim
        self._documents: dict[str, Document] = {}
        self._sections: dict[int, Section] = {}
        self._next_section_id = 1

    async def connect(self) -> None:
        """No-op for in-memory store."""

    async def close(self) -> None:
        """No-op for in-memory store."""

    async def create_document(self, *, name: str, storage_path: str, owner_id: str) -> Document:
        document = Document(
            id=str(uuid.uuid4()),
            name=name,
            storage_path=storage_path,
            owner_id=owner_id,
            created_at=datetime.now(timezone.utc),
        )
        self._documents[document.id] = document
        return document

    async def get_document(self, document_id: str) -> Document | None:
        return self._documents.get(document_id)

    async def delete_document(self, document_id: str) -> Document | None:
        document = self._documents.pop(document_id, None)
        if document is None:
            return None
        for section_id in [s.id for s in self._sections.values() if s.document_id == document_id]:
            del self._sections[section_id]
        return document

    async def insert_sections(self, document_id: str, drafts: list[SectionDraft]) -> list[Section]:
        if document_id not in self._documents:
            raise KeyError(f"Unknown document {document_id}")
        start = sum(1 for s in self._sections.values() if s.document_id == document_id)
        inserted = []
        for offset, draft in enumerate(drafts):
            section = Section(
                id=self._next_section_id,
                document_id=document_id,
                position=start + offset,
                content=draft.content,
                heading=draft.heading,
                part=draft.part,
            )
            self._sections[section.id] = section
            self._next_section_id += 1
            inserted.append(_copy(section))
        return inserted

    async def list_sections(self, document_id: str) -> list[Section]:
        return [_copy(s) for s in self._sections.values() if s.document_id == document_id]

    async def sections_missing_embedding(self, document_id: str | None = None) -> list[Section]:
        return [
            _copy(s)
            for s in self._sections.values()
            if s.embedding is None and (document_id is None or s.document_id == document_id)
        ]

    async def set_embedding(self, section_id: int, vector: np.ndarray) -> bool:
        array = _check_vector(vector, self.embedding_dim)
        section = self._sections.get(section_id)
        if section is None or section.embedding is not None:
            return False
        section.embedding = array
        return True

    async def upsert_embedding(self, section_id: int, vector: np.ndarray) -> bool:
        array = _check_vector(vector, self.embedding_dim)
        section = self._sections.get(section_id)
        if section is None:
            return False
        section.embedding = array
        return True

    async def match_sections(
        self,
        query_vector: np.ndarray,
        *,
        threshold: float,
        limit: int,
        owner_id: str | None = None,
    ) -> list[SectionMatch]:
        query = _check_vector(query_vector, self.embedding_dim)
        scored = []
        # Sections iterate in insertion order; the stable sort keeps it for ties.
        for section in self._sections.values():
            if section.embedding is None:
                continue
            if owner_id is not None and self._documents[section.document_id].owner_id != owner_id:
                continue
            score = cosine_similarity(query, section.embedding)
            if score >= threshold:
                scored.append((section, score))

        scored.sort(key=lambda item: item[1], reverse=True)
        return [
            SectionMatch(
                section_id=section.id,
                document_id=section.document_id,
                content=section.content,
                similarity=score,
            )
            for section, score in scored[: max(limit, 0)]
        ]


def _copy(section: Section) -> Section:
    return Section(
        id=section.id,
        document_id=section.document_id,
        position=section.position,
        content=section.content,
        heading=section.heading,
        part=section.part,
        embedding=None if section.embedding is None else section.embedding.copy(),
    )


# ---------------------------------------------------------------------------
# PGVECTOR STORE (production)
# ---------------------------------------------------------------------------

_SECTION_COLUMNS = "id, document_id, position, content, heading, part, embedding"
# Candidates the HNSW scan keeps before the threshold filter; pgvector defaults to 40.
HNSW_EF_SEARCH = 200


class PgVectorSectionStore:
    """PostgreSQL store using pgvector with an HNSW cosine index.

    Every operation holds the connection for its whole duration, so a
    statement from one task never lands inside another task's transaction.
    """

    def __init__(self, database_url: str, *, embedding_dim: int) -> None:
        self.database_url = database_url
        self.embedding_dim = embedding_dim
        self._conn: psycopg.AsyncConnection | None = None
        self._lock = asyncio.Lock()

    @retry(
        retry=retry_if_exception_type(psycopg.OperationalError),
        stop=stop_after_attempt(5),
        wait=wait_exponential_jitter(initial=1, max=30),
        reraise=True,
    )
    async def connect(self) -> None:
        """Open the connection, enable pgvector and create the schema."""
        if self._conn is not None:
            return
        conn = await psycopg.AsyncConnection.connect(self.database_url, autocommit=True)
        await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
        await register_vector_async(conn)
        await conn.execute(f"SET hnsw.ef_search = {HNSW_EF_SEARCH}")
        self._conn = conn
        await self.create_schema()
        logger.info("Connected to PostgreSQL section store")

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                await self._conn.close()
                self._conn = None

    @property
    def conn(self) -> psycopg.AsyncConnection:
        if self._conn is None:
            raise RuntimeError("Section store is not connected.")
        return self._conn

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[psycopg.AsyncConnection]:
        async with self._lock:
            yield self.conn

    async def create_schema(self) -> None:
        async with self._session() as conn:
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    storage_path TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            await conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS document_sections (
                    id BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
                    document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
                    position INT NOT NULL,
                    content TEXT NOT NULL,
                    heading TEXT,
                    part INT NOT NULL DEFAULT 1,
                    embedding vector({self.embedding_dim})
                )
                """
            )
            await conn.execute(
                """
                CREATE INDEX IF NOT EXISTS document_sections_embedding_idx
                ON document_sections
                USING hnsw (embedding vector_cosine_ops)
                """
            )
            await conn.execute(
                """
                CREATE INDEX IF NOT EXISTS document_sections_document_idx
                ON document_sections (document_id)
                """
            )

    async def create_document(self, *, name: str, storage_path: str, owner_id: str) -> Document:
        async with self._session() as conn:
            cur = await conn.execute(
                """
                INSERT INTO documents (id, name, storage_path, owner_id)
                VALUES (%s, %s, %s, %s)
                RETURNING id, name, storage_path, owner_id, created_at
                """,
                (str(uuid.uuid4()), name, storage_path, owner_id),
            )
            return _document_from_row(await cur.fetchone())

    async def get_document(self, document_id: str) -> Document | None:
        async with self._session() as conn:
            cur = await conn.execute(
                "SELECT id, name, storage_path, owner_id, created_at FROM documents WHERE id = %s",
                (document_id,),
            )
            row = await cur.fetchone()
        return _document_from_row(row) if row else None

    async def delete_document(self, document_id: str) -> Document | None:
        async with self._session() as conn:
            cur = await conn.execute(
                """
                DELETE FROM documents WHERE id = %s
                RETURNING id, name, storage_path, owner_id, created_at
                """,
                (document_id,),
            )
            row = await cur.fetchone()
        return _document_from_row(row) if row else None

    async def insert_sections(self, document_id: str, drafts: list[SectionDraft]) -> list[Section]:
        inserted: list[Section] = []
        async with self._session() as conn, conn.transaction():
            cur = await conn.execute(
                "SELECT count(*) FROM document_sections WHERE document_id = %s",
                (document_id,),
            )
            (start,) = await cur.fetchone()
            for offset, draft in enumerate(drafts):
                cur = await conn.execute(
                    f"""
                    INSERT INTO document_sections (document_id, position, content, heading, part)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING {_SECTION_COLUMNS}
                    """,
                    (document_id, start + offset, draft.content, draft.heading, draft.part),
                )
                inserted.append(_section_from_row(await cur.fetchone()))
        return inserted

    async def list_sections(self, document_id: str) -> list[Section]:
        async with self._session() as conn:
            cur = await conn.execute(
                f"SELECT {_SECTION_COLUMNS} FROM document_sections WHERE document_id = %s ORDER BY id",
                (document_id,),
            )
            rows = await cur.fetchall()
        return [_section_from_row(row) for row in rows]

    async def sections_missing_embedding(self, document_id: str | None = None) -> list[Section]:
        async with self._session() as conn:
            if document_id is None:
                cur = await conn.execute(
                    f"SELECT {_SECTION_COLUMNS} FROM document_sections "
                    "WHERE embedding IS NULL ORDER BY id"
                )
            else:
                cur = await conn.execute(
                    f"SELECT {_SECTION_COLUMNS} FROM document_sections "
                    "WHERE embedding IS NULL AND document_id = %s ORDER BY id",
                    (document_id,),
                )
            rows = await cur.fetchall()
        return [_section_from_row(row) for row in rows]

    async def set_embedding(self, section_id: int, vector: np.ndarray) -> bool:
        array = _check_vector(vector, self.embedding_dim)
        async with self._session() as conn:
            cur = await conn.execute(
                "UPDATE document_sections SET embedding = %s WHERE id = %s AND embedding IS NULL",
                (array, section_id),
            )
            return cur.rowcount == 1

    async def upsert_embedding(self, section_id: int, vector: np.ndarray) -> bool:
        array = _check_vector(vector, self.embedding_dim)
        async with self._session() as conn:
            cur = await conn.execute(
                "UPDATE document_sections SET embedding = %s WHERE id = %s",
                (array, section_id),
            )
            return cur.rowcount == 1

    async def match_sections(
        self,
        query_vector: np.ndarray,
        *,
        threshold: float,
        limit: int,
        owner_id: str | None = None,
    ) -> list[SectionMatch]:
        """Nearest sections at or above the threshold, closest first.

        The HNSW scan is approximate: the threshold and owner filters apply
        to the candidates the index returns, at most hnsw.ef_search of them
        (raised to HNSW_EF_SEARCH on connect). With very many near-duplicate
        sections a qualifying row can be missed; an exact scan needs the
        index dropped or enable_indexscan turned off.
        """
        query = _check_vector(query_vector, self.embedding_dim)
        owner_clause = "AND d.owner_id = %(owner_id)s" if owner_id is not None else ""
        try:
            async with self._session() as conn:
                cur = await conn.execute(
                    f"""
                    SELECT s.id, s.document_id, s.content,
                           1 - (s.embedding <=> %(query)s) AS similarity
                    FROM document_sections s
                    JOIN documents d ON d.id = s.document_id
                    WHERE s.embedding IS NOT NULL
                      AND 1 - (s.embedding <=> %(query)s) >= %(threshold)s
                      {owner_clause}
                    ORDER BY s.embedding <=> %(query)s, s.id
                    LIMIT %(limit)s
                    """,
                    {"query": query, "threshold": threshold, "limit": limit, "owner_id": owner_id},
                )
                rows = await cur.fetchall()
        except (psycopg.Error, RuntimeError) as exc:
            raise MatchError(f"Similarity search failed: {exc}") from exc

        return [
            SectionMatch(
                section_id=row[0],
                document_id=row[1],
                content=row[2],
                similarity=float(row[3]),
            )
            for row in rows
        ]


def _document_from_row(row) -> Document:
    return Document(
        id=row[0],
        name=row[1],
        storage_path=row[2],
        owner_id=row[3],
        created_at=row[4],
    )


def _section_from_row(row) -> Section:
    embedding = row[6]
    return Section(
        id=row[0],
        document_id=row[1],
        position=row[2],
        content=row[3],
        heading=row[4],
        part=row[5],
        embedding=None if embedding is None else np.asarray(embedding, dtype=np.float32),
    )


def get_section_store(database_url: str | None, *, embedding_dim: int) -> SectionStore:
    """Factory: PostgreSQL when a database URL is configured, else in-memory."""
    if database_url:
        return PgVectorSectionStore(database_url, embedding_dim=embedding_dim)
    logger.warning("DATABASE_URL not set; using in-memory section store")
    return InMemorySectionStore(embedding_dim)
