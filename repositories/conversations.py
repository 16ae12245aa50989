"""Read/write contract for the conversation store used by the AI chat service."""

from __future__ import annotations

import asyncio
import uuid
from copy import deepcopy
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional, Protocol

from shared.models.chat import Conversation, StoredMessage


class ConversationStoreError(RuntimeError):
    """Raised when the conversation store rejects a read or write."""


class ConversationStore(Protocol):
    """Subset of the conversation storage engine the orchestrator relies on."""

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:  # pragma: no cover - interface definition
        ...

    async def send_system_message(
        self,
        *,
        conversation_id: str,
        practice_id: str,
        content: str,
        metadata: Mapping[str, Any],
        recipient_user_id: str,
    ) -> StoredMessage:  # pragma: no cover - interface definition
        ...

    async def update_conversation_metadata(
        self,
        conversation_id: str,
        practice_id: str,
        metadata: Mapping[str, Any],
    ) -> Conversation:  # pragma: no cover - interface definition
        ...


class InMemoryConversationStore:
    """Dictionary-backed store for local runs and tests.

    ``fail_message_writes`` and ``fail_metadata_writes`` make the next N
    writes of that kind raise :class:`ConversationStoreError`.
    """

    def __init__(self, conversations: Iterable[Conversation] = ()) -> None:
        self._conversations: dict[str, Conversation] = {
            conversation.id: conversation for conversation in conversations
        }
        self.messages: list[StoredMessage] = []
        self.metadata_writes: list[dict[str, Any]] = []
        self.fail_message_writes = 0
        self.fail_metadata_writes = 0
        self._lock = asyncio.Lock()

    def add(self, conversation: Conversation) -> Conversation:
        self._conversations[conversation.id] = conversation
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conversation = self._conversations.get(conversation_id)
        return conversation.model_copy(deep=True) if conversation else None

    async def send_system_message(
        self,
        *,
        conversation_id: str,
        practice_id: str,
        content: str,
        metadata: Mapping[str, Any],
        recipient_user_id: str,
    ) -> StoredMessage:
        async with self._lock:
            if self.fail_message_writes > 0:
                self.fail_message_writes -= 1
                raise ConversationStoreError("message write rejected")
            if conversation_id not in self._conversations:
                raise ConversationStoreError(f"unknown conversation '{conversation_id}'")
            message = StoredMessage(
                id=uuid.uuid4().hex,
                conversation_id=conversation_id,
                practice_id=practice_id,
                content=content,
                metadata=deepcopy(dict(metadata)),
                recipient_user_id=recipient_user_id,
                created_at=datetime.now(timezone.utc).isoformat(),
            )
            self.messages.append(message)
            return message

    async def update_conversation_metadata(
        self,
        conversation_id: str,
        practice_id: str,
        metadata: Mapping[str, Any],
    ) -> Conversation:
        async with self._lock:
            if self.fail_metadata_writes > 0:
                self.fail_metadata_writes -= 1
                raise ConversationStoreError("metadata write rejected")
            conversation = self._conversations.get(conversation_id)
            if conversation is None or conversation.practice_id != practice_id:
                raise ConversationStoreError(f"unknown conversation '{conversation_id}'")
            updated = conversation.model_copy(update={"user_info": deepcopy(dict(metadata))})
            self._conversations[conversation_id] = updated
            self.metadata_writes.append(deepcopy(dict(metadata)))
            return updated.model_copy(deep=True)


__all__ = [
    "ConversationStore",
    "ConversationStoreError",
    "InMemoryConversationStore",
]
