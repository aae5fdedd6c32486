"""
Conversation context — renders a conversation as transcript text.

    USER: hey
    ASSISTANT: hi! who's this?
    USER: it's sam

The rendered text is opaque to the worker; it is handed straight to the
reply generator, whose prompt builder parses the same labels back into turns.
"""
from __future__ import annotations

from abc import ABC, abstractmethod

from database.messages import load_conversation, load_timeline
from database.session import Database
from models.schemas import MessageDirection, TimelineEntry


class ConversationContextProvider(ABC):
    @abstractmethod
    async def render(self, conversation_id: str) -> str:
        """Return the transcript for a conversation (may be empty)."""
        ...


class TranscriptContextProvider(ConversationContextProvider):
    """Reads the timeline from the store in its own short read-only session."""

    def __init__(self, db: Database, assistant_label: str = "ASSISTANT", user_label: str = "USER",
                 max_entries: int = 200):
        self.db = db
        self.assistant_label = assistant_label
        self.user_label = user_label
        self.max_entries = max_entries

    def format(self, entries: list[TimelineEntry]) -> str:
        lines = []
        for entry in entries:
            who = self.user_label if entry.direction == MessageDirection.INBOUND else self.assistant_label
            lines.append(f"{who}: {entry.body}")
        return "\n".join(lines)

    async def render(self, conversation_id: str) -> str:
        async with self.db.session() as session:
            conversation = await load_conversation(session, conversation_id)
            entries = await load_timeline(
                session, conversation_id, conversation.user_number, limit=self.max_entries,
            )
        return self.format(entries)
