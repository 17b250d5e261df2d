from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class Profile(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    full_name: str = "User"


class Medication(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    dosage: str | None = None
    frequency: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    doctor: str | None = None
    notes: str | None = None
    prescription: str | None = None


class Appointment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str | None = None
    doctor_name: str | None = None
    location: str | None = None
    appointment_date: datetime | None = None
    notes: str | None = None


class UserHealthData(BaseModel):
    """Health context supplied by the client alongside a chat request."""

    profile: Profile | None = None
    medications: list[Medication] = Field(default_factory=list)
    appointments: list[Appointment] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return self.profile is None and not self.medications and not self.appointments


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)
    chat_id: str | None = None
    messages: list[ChatMessage] = Field(default_factory=list)
    embedding: list[float] | None = None
    user_data: UserHealthData | None = None
