import asyncio
import unittest
import uuid
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

from medassist.services.health_records import (
    InMemoryHealthRecordStore,
    PgHealthRecordStore,
    get_health_record_store,
)


def _cursor(*, one=None, rows=()):
    cursor = MagicMock()
    cursor.fetchone = AsyncMock(return_value=one)
    cursor.fetchall = AsyncMock(return_value=list(rows))
    return cursor


class TestPgHealthRecordStore(unittest.IsolatedAsyncioTestCase):
    def _store(self, cursor) -> tuple[PgHealthRecordStore, MagicMock]:
        store = PgHealthRecordStore("postgresql://test")
        conn = MagicMock()
        conn.execute = AsyncMock(return_value=cursor)
        store._conn = conn
        return store, conn

    async def test_profile_row(self) -> None:
        user_id = uuid.uuid4()
        store, _ = self._store(_cursor(one={"id": user_id, "full_name": None, "age": 81}))
        profile = await store.get_profile(str(user_id))
        self.assertEqual(profile.id, str(user_id))
        self.assertEqual(profile.full_name, "User")
        self.assertEqual(profile.model_dump()["age"], 81)

    async def test_missing_profile(self) -> None:
        store, _ = self._store(_cursor(one=None))
        self.assertIsNone(await store.get_profile("nobody"))

    async def test_medications_include_prescription_text(self) -> None:
        row = {"name": "Metformin", "dosage": "500 mg", "user_id": "u1", "prescription": "Take with food."}
        store, conn = self._store(_cursor(rows=[row]))
        (medication,) = await store.list_medications("u1")
        self.assertEqual(medication.prescription, "Take with food.")
        sql, params = conn.execute.call_args.args
        self.assertIn("document_sections", sql)
        self.assertEqual(params, ("u1",))

    async def test_appointments(self) -> None:
        row = {"title": "Review", "appointment_date": datetime(2024, 6, 3, 9, 30), "user_id": "u1"}
        store, _ = self._store(_cursor(rows=[row]))
        (appointment,) = await store.list_appointments("u1")
        self.assertEqual(appointment.title, "Review")

    async def test_concurrent_lookups_take_turns(self) -> None:
        events: list[str] = []
        cursor = _cursor(rows=[])

        async def execute(sql, params=None):
            events.append("start")
            await asyncio.sleep(0)
            events.append("end")
            return cursor

        store, conn = self._store(cursor)
        conn.execute = AsyncMock(side_effect=execute)

        await asyncio.gather(store.list_medications("u1"), store.list_appointments("u1"))

        self.assertEqual(events, ["start", "end", "start", "end"])

    async def test_not_connected(self) -> None:
        with self.assertRaises(RuntimeError):
            await PgHealthRecordStore("postgresql://test").list_appointments("u1")


class TestFactory(unittest.TestCase):
    def test_factory(self) -> None:
        self.assertIsInstance(get_health_record_store(None), InMemoryHealthRecordStore)
        self.assertIsInstance(get_health_record_store("postgresql://db"), PgHealthRecordStore)


if __name__ == "__main__":
    unittest.main()
