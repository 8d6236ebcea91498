"""
Data models for the mailbox sync pipeline.

These Pydantic models define the shape of all data flowing through the app:
accounts, parsed messages, persisted records, retrieval examples and
notification jobs.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Category(str, Enum):
    """
    The closed set of categories a processed email can carry.

    The values are the literal strings persisted in the store and
    returned by the API.
    """
    INTERESTED = "Interested"
    MEETING_BOOKED = "Meeting Booked"
    NOT_INTERESTED = "Not Interested"
    SPAM = "Spam"
    OUT_OF_OFFICE = "Out of Office"

    @classmethod
    def from_label(cls, label: str) -> Optional["Category"]:
        """Exact, case-sensitive lookup. Returns None for anything else."""
        for category in cls:
            if category.value == label:
                return category
        return None


class ConnectionState(str, Enum):
    """Lifecycle of one mailbox account's connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    WATCHING = "watching"
    RECONNECTING = "reconnecting"
    SHUTTING_DOWN = "shutting_down"


class MailAccount(BaseModel):
    """One configured IMAP mailbox. Immutable for the process lifetime."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    host: str
    port: int = Field(default=993)
    username: str
    password: str = Field(repr=False)
    use_tls: bool = Field(default=True)
    verify_certificates: bool = Field(default=True)
    folder: str = Field(default="INBOX")


class RawMessage(BaseModel):
    """A message as fetched from the server, before parsing."""
    uid: int
    raw: bytes
    flags: list[str] = Field(default_factory=list)


class ParsedMessage(BaseModel):
    """Normalized fields extracted from a raw RFC822 message."""
    uid: int
    message_id: str = Field(default="")
    subject: str = Field(default="")
    sender: str = Field(default="")
    to: str = Field(default="")
    date: datetime = Field(default_factory=utcnow)
    body: str = Field(default="")


class EmailRecord(BaseModel):
    """The canonical persisted email document."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    account: str
    account_email: str = Field(default="")
    uid: Optional[int] = Field(default=None)
    message_id: str = Field(default="")
    subject: str = Field(default="")
    sender: str = Field(default="", alias="from")
    to: str = Field(default="")
    date: datetime = Field(default_factory=utcnow)
    folder: str = Field(default="INBOX")
    body: str = Field(default="")
    category: Optional[Category] = Field(default=None)
    processed: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_parsed(cls, parsed: ParsedMessage, account: MailAccount) -> "EmailRecord":
        return cls(
            account=account.id,
            account_email=account.email,
            uid=parsed.uid,
            message_id=parsed.message_id,
            subject=parsed.subject,
            sender=parsed.sender,
            to=parsed.to,
            date=parsed.date,
            folder=account.folder,
            body=parsed.body,
        )

    def to_document(self) -> dict:
        """Serialize for the document store (JSON-safe, wire field names)."""
        return self.model_dump(mode="json", by_alias=True)


class SentimentResult(BaseModel):
    """Category plus a 1-10 sentiment score."""
    category: Category
    sentiment: int = Field(default=5, ge=1, le=10)


class ExampleDocument(BaseModel):
    """A (context, email, reply) example used to ground reply suggestions."""
    id: str
    context: str
    email: str
    reply: str

    @property
    def embedding_text(self) -> str:
        return f"{self.context}: {self.email}"


class SuggestionRequest(BaseModel):
    """An email to draft a reply for."""
    subject: str = Field(default="")
    body: str = Field(default="")
    sender: str = Field(default="", alias="from")

    model_config = ConfigDict(populate_by_name=True)


class ReplySuggestion(BaseModel):
    """A generated reply with the examples it was grounded on."""
    reply: str
    examples: list[ExampleDocument]
    confidence: int = Field(ge=0, le=100)


class TrainingExampleRequest(BaseModel):
    """Administrative request to append a retrieval example."""
    context: str
    email: str
    reply: str


class NotificationJob(BaseModel):
    """One record's delivery attempt sequence to one sink. Never persisted."""
    record: EmailRecord
    sink: str
    attempt: int = Field(default=0)
    delay_seconds: float = Field(default=0.0)
