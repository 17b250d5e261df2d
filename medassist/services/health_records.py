"""Read-only access to profile, medication and appointment records.

These rows are owned by the CRUD surface; the chat pipeline only reads them.
"""

from __future__ import annotations

import asyncio
from typing import Protocol, runtime_checkable

import psycopg
from psycopg.rows import dict_row

from medassist.core.logging import get_logger
from medassist.models.chat import Appointment, Medication, Profile

logger = get_logger(__name__)


@runtime_checkable
class HealthRecordStore(Protocol):
    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def get_profile(self, user_id: str) -> Profile | None:
        ...

    async def list_medications(self, user_id: str) -> list[Medication]:
        ...

    async def list_appointments(self, user_id: str) -> list[Appointment]:
        ...


class InMemoryHealthRecordStore:
    def __init__(self) -> None:
        self.profiles: dict[str, Profile] = {}
        self.medications: dict[str, list[Medication]] = {}
        self.appointments: dict[str, list[Appointment]] = {}

    async def connect(self) -> None:
        """No-op for in-memory store."""

    async def close(self) -> None:
        """No-op for in-memory store."""

    async def get_profile(self, user_id: str) -> Profile | None:
        return self.profiles.get(user_id)

    async def list_medications(self, user_id: str) -> list[Medication]:
        return list(self.medications.get(user_id, []))

    async def list_appointments(self, user_id: str) -> list[Appointment]:
        return list(self.appointments.get(user_id, []))


class PgHealthRecordStore:
    """Reads user_profiles, medications and appointments from PostgreSQL.

    A medication linked to an uploaded prescription gets that document's
    section text as its prescription. Lookups share one connection and
    take turns on it.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._conn: psycopg.AsyncConnection | None = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        if self._conn is None:
            self._conn = await psycopg.AsyncConnection.connect(
                self.database_url,
                autocommit=True,
                row_factory=dict_row,
            )

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                await self._conn.close()
                self._conn = None

    @property
    def conn(self) -> psycopg.AsyncConnection:
        if self._conn is None:
            raise RuntimeError("Health record store is not connected.")
        return self._conn

    async def _fetch(self, sql: str, params: tuple) -> list[dict]:
        async with self._lock:
            cur = await self.conn.execute(sql, params)
            return await cur.fetchall()

    async def get_profile(self, user_id: str) -> Profile | None:
        async with self._lock:
            cur = await self.conn.execute("SELECT * FROM user_profiles WHERE id = %s", (user_id,))
            row = await cur.fetchone()
        if row is None:
            return None
        row["id"] = str(row["id"])
        row["full_name"] = row.get("full_name") or "User"
        return Profile.model_validate(row)

    async def list_medications(self, user_id: str) -> list[Medication]:
        rows = await self._fetch(
            """
            SELECT m.*,
                   (SELECT string_agg(s.content, E'\\n\\n' ORDER BY s.id)
                    FROM document_sections s
                    WHERE s.document_id = m.document_id::text) AS prescription
            FROM medications m
            WHERE m.user_id = %s
            ORDER BY m.start_date NULLS LAST, m.name
            """,
            (user_id,),
        )
        return [Medication.model_validate(row) for row in rows]

    async def list_appointments(self, user_id: str) -> list[Appointment]:
        rows = await self._fetch(
            "SELECT * FROM appointments WHERE user_id = %s ORDER BY appointment_date NULLS LAST",
            (user_id,),
        )
        return [Appointment.model_validate(row) for row in rows]


def get_health_record_store(database_url: str | None) -> HealthRecordStore:
    if database_url:
        return PgHealthRecordStore(database_url)
    logger.warning("DATABASE_URL not set; using empty in-memory health records")
    return InMemoryHealthRecordStore()
