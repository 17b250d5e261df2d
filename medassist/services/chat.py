"""Retrieval-augmented chat: user context + matched sections -> streamed answer."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import AsyncIterator, Literal, Union

import numpy as np

from medassist.core.errors import EmbeddingError, MatchError
from medassist.core.logging import get_logger
from medassist.models.chat import Appointment, ChatRequest, Medication, Profile, UserHealthData
from medassist.models.documents import SectionMatch
from medassist.services.embedder import EmbeddingProvider
from medassist.services.health_records import HealthRecordStore
from medassist.services.llm import ChatCompletionClient
from medassist.services.section_store import SectionStore

logger = get_logger(__name__)

NO_DOCUMENTS_MARKER = "No documents found"
NO_MEDICATIONS = "The user currently has no medications recorded in the system."
NO_APPOINTMENTS = "The user currently has no appointments scheduled in the system."
NO_PRESCRIPTION = "No prescription available"
NOT_LOADED = "This information could not be loaded right now."

CONTEXT_PARTS = ("profile", "medications", "appointments")


@dataclass(frozen=True)
class ContextResolved:
    data: UserHealthData
    source: Literal["request", "lookup"]


@dataclass(frozen=True)
class ContextDegraded:
    """Whatever could be loaded, plus the parts that could not."""

    data: UserHealthData
    missing: tuple[str, ...]
    reason: str


UserContext = Union[ContextResolved, ContextDegraded]


@dataclass
class ChatPrompt:
    messages: list[dict[str, str]]
    context: UserContext
    documents: str
    matches: list[SectionMatch] = field(default_factory=list)


def format_medications(medications: list[Medication]) -> str:
    if not medications:
        return NO_MEDICATIONS
    rows = [
        {
            "name": med.name,
            "dosage": med.dosage,
            "frequency": med.frequency,
            "start_date": med.start_date.isoformat() if med.start_date else None,
            "end_date": med.end_date.isoformat() if med.end_date else None,
            "doctor": med.doctor,
            "notes": med.notes,
            "prescription": med.prescription or NO_PRESCRIPTION,
        }
        for med in medications
    ]
    return json.dumps(rows, indent=2)


def format_appointments(appointments: list[Appointment]) -> str:
    if not appointments:
        return NO_APPOINTMENTS
    rows = []
    for apt in appointments:
        when = apt.appointment_date
        rows.append(
            {
                "doctor": apt.doctor_name or "No doctor specified",
                "purpose": apt.title or "No purpose specified",
                "location": apt.location or "No location specified",
                "date": when.strftime("%Y-%m-%d") if when else "No date specified",
                "time": when.strftime("%H:%M") if when else "No time specified",
                "notes": apt.notes or "",
            }
        )
    return json.dumps(rows, indent=2)


def build_system_prompt(context: UserContext, documents: str) -> str:
    """Assemble the system instruction sent ahead of the conversation."""
    data = context.data
    missing = context.missing if isinstance(context, ContextDegraded) else ()
    profile = data.profile.model_dump(mode="json") if data.profile else {}
    medications = NOT_LOADED if "medications" in missing else format_medications(data.medications)
    appointments = NOT_LOADED if "appointments" in missing else format_appointments(data.appointments)

    unavailable = ""
    if missing:
        parts = ", ".join(missing)
        unavailable = (
            f"\nUnavailable Information:\n"
            f"The following could not be loaded and must not be guessed: {parts}.\n"
        )

    return f"""You are a helpful health assistant for elderly users. Your goal is to provide clear,
compassionate guidance about their health, medications, and appointments.

User Profile Information:
{json.dumps(profile, indent=2)}

Medications:
{medications}

Appointments:
{appointments}
{unavailable}
Relevant Documents:
{documents}

When responding to the user:
1. Be concise and clear - use simple language
2. If they ask about their medications, provide specific details about their prescriptions, or let them know if they have no medications recorded
3. If they ask about appointments, provide details about upcoming appointments, or let them know if they have no appointments scheduled
4. If they ask something you don't have information about, kindly let them know instead of making something up
5. Be warm and reassuring, as many users may be elderly or anxious about their health

Keep responses relatively brief and focused on addressing their specific question."""


class ChatOrchestrator:
    def __init__(
        self,
        *,
        embeddings: EmbeddingProvider,
        store: SectionStore,
        health_records: HealthRecordStore,
        llm: ChatCompletionClient,
        match_threshold: float = 0.8,
        match_limit: int = 5,
    ) -> None:
        self.embeddings = embeddings
        self.store = store
        self.health_records = health_records
        self.llm = llm
        self.match_threshold = match_threshold
        self.match_limit = match_limit

    async def resolve_user_context(self, request: ChatRequest, user_id: str | None) -> UserContext:
        """Use the health data sent with the request, else look it up by user id.

        Lookup failures never fail the request; they yield ContextDegraded.
        """
        if request.user_data is not None and not request.user_data.is_empty():
            return ContextResolved(data=request.user_data, source="request")

        if not user_id:
            logger.warning("Chat without user data or user id; context unavailable")
            return ContextDegraded(
                data=UserHealthData(),
                missing=CONTEXT_PARTS,
                reason="no user id",
            )

        results = await asyncio.gather(
            self.health_records.get_profile(user_id),
            self.health_records.list_medications(user_id),
            self.health_records.list_appointments(user_id),
            return_exceptions=True,
        )

        loaded = {}
        missing = []
        for part, result in zip(CONTEXT_PARTS, results):
            if isinstance(result, Exception):
                logger.warning("User %s: could not load %s - %s", user_id, part, result)
                missing.append(part)
            elif isinstance(result, BaseException):
                raise result
            else:
                loaded[part] = result

        profile = loaded.get("profile")
        if profile is None and "profile" not in missing:
            profile = Profile(id=user_id)
        data = UserHealthData(
            profile=profile,
            medications=loaded.get("medications") or [],
            appointments=loaded.get("appointments") or [],
        )
        if missing:
            return ContextDegraded(data=data, missing=tuple(missing), reason="lookup failed")
        return ContextResolved(data=data, source="lookup")

    async def embed_query(self, text: str) -> np.ndarray:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self.embeddings.embed, text)
        except Exception as exc:
            raise EmbeddingError(f"Query embedding failed: {exc}") from exc

    async def retrieve_documents(
        self,
        request: ChatRequest,
        user_id: str | None,
    ) -> tuple[str, list[SectionMatch]]:
        """Return the document context string and the matches behind it.

        No matches, or a failed embedding or search, gives NO_DOCUMENTS_MARKER.
        """
        try:
            if request.embedding is not None:
                query = np.asarray(request.embedding, dtype=np.float32)
            else:
                query = await self.embed_query(request.message)
            matches = await self.store.match_sections(
                query,
                threshold=self.match_threshold,
                limit=self.match_limit,
                owner_id=user_id,
            )
        except (EmbeddingError, MatchError, ValueError) as exc:
            logger.warning("Document retrieval failed, continuing without documents - %s", exc)
            return NO_DOCUMENTS_MARKER, []

        logger.info("Chat retrieval: %d matching sections", len(matches))
        if not matches:
            return NO_DOCUMENTS_MARKER, []
        return "\n\n".join(match.content for match in matches), matches

    def compose_messages(
        self,
        context: UserContext,
        documents: str,
        request: ChatRequest,
    ) -> list[dict[str, str]]:
        messages = [{"role": "system", "content": build_system_prompt(context, documents)}]
        messages.extend({"role": m.role, "content": m.content} for m in request.messages)

        last = request.messages[-1] if request.messages else None
        if last is None or last.role != "user" or last.content != request.message:
            messages.append({"role": "user", "content": request.message})
        return messages

    async def prepare(self, request: ChatRequest, user_id: str | None) -> ChatPrompt:
        """Gather user context and documents, then compose the prompt."""
        context, (documents, matches) = await asyncio.gather(
            self.resolve_user_context(request, user_id),
            self.retrieve_documents(request, user_id),
        )
        if isinstance(context, ContextDegraded):
            logger.warning("Chat context degraded: missing %s", ", ".join(context.missing))
        return ChatPrompt(
            messages=self.compose_messages(context, documents, request),
            context=context,
            documents=documents,
            matches=matches,
        )

    async def stream_reply(
        self,
        prompt: ChatPrompt,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        """Forward LLM tokens as they arrive. CompletionError propagates."""
        count = 0
        async for token in self.llm.stream(prompt.messages, cancel):
            count += 1
            yield token
        logger.info("Chat reply complete (%d chunks)", count)


class ChatStreamRegistry:
    """One live stream per chat id; starting a new one aborts the previous."""

    def __init__(self) -> None:
        self._active: dict[str, asyncio.Event] = {}

    def begin(self, chat_id: str | None) -> asyncio.Event:
        cancel = asyncio.Event()
        if chat_id is None:
            return cancel
        previous = self._active.get(chat_id)
        if previous is not None:
            logger.info("Chat %s: superseding in-flight stream", chat_id)
            previous.set()
        self._active[chat_id] = cancel
        return cancel

    def end(self, chat_id: str | None, cancel: asyncio.Event) -> None:
        if chat_id is not None and self._active.get(chat_id) is cancel:
            del self._active[chat_id]
