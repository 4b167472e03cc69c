"""
Conversation store: the persistence boundary used by the voice pipeline.

Returns plain records rather than ORM objects so callers never touch a
detached session.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from voicebot.db.database import Database
from voicebot.db.models import Agent, ConversationSession, Message

logger = logging.getLogger(__name__)


@dataclass
class DocumentRecord:
    id: str
    content_text: Optional[str] = None


@dataclass
class AgentRecord:
    id: str
    user_id: Optional[str] = None
    name: str = ""
    prompt: Optional[str] = None
    documents: List[DocumentRecord] = field(default_factory=list)

    @property
    def document_ids(self) -> List[str]:
        return [doc.id for doc in self.documents]


@dataclass
class SessionRecord:
    id: str
    agent_id: Optional[str]
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    agent: Optional[AgentRecord] = None

    @property
    def is_ended(self) -> bool:
        return self.ended_at is not None


@dataclass
class MessageRecord:
    id: str
    session_id: str
    role: str
    text: str
    audio_url: Optional[str] = None
    created_at: Optional[datetime] = None


def _parse_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (ValueError, AttributeError):
        return None


def _message_record(message: Message) -> MessageRecord:
    return MessageRecord(
        id=str(message.id),
        session_id=str(message.session_id),
        role=message.role,
        text=message.text,
        audio_url=message.audio_url,
        created_at=message.created_at,
    )


class ConversationStore:
    """
    Session lookup and message persistence on top of Database.
    """

    def __init__(self, db: Database):
        self.db = db

    async def find_session(self, session_id: str) -> Optional[SessionRecord]:
        """
        Load a session with its agent and the agent's documents.

        Malformed ids are treated as missing.
        """
        key = _parse_uuid(session_id)
        if key is None:
            return None

        async with self.db.session() as session:
            result = await session.execute(
                select(ConversationSession)
                .where(ConversationSession.id == key)
                .options(selectinload(ConversationSession.agent).selectinload(Agent.documents))
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None

            agent = None
            if row.agent is not None:
                agent = AgentRecord(
                    id=str(row.agent.id),
                    user_id=str(row.agent.user_id) if row.agent.user_id else None,
                    name=row.agent.name,
                    prompt=row.agent.prompt,
                    documents=[
                        DocumentRecord(id=str(doc.id), content_text=doc.content_text)
                        for doc in row.agent.documents
                    ],
                )

            return SessionRecord(
                id=str(row.id),
                agent_id=str(row.agent_id) if row.agent_id else None,
                started_at=row.started_at,
                ended_at=row.ended_at,
                agent=agent,
            )

    async def persist_turn(
        self,
        session_id: str,
        user_text: str,
        bot_text: str,
        bot_audio_url: Optional[str] = None,
    ) -> Tuple[MessageRecord, MessageRecord]:
        """
        Write the user and bot messages of one turn in a single transaction.
        """
        created_at = datetime.now(timezone.utc)
        key = uuid.UUID(session_id)

        async with self.db.session() as session:
            user_message = Message(
                id=uuid.uuid4(),
                session_id=key,
                role="user",
                text=user_text,
                audio_url=None,
                created_at=created_at,
            )
            bot_message = Message(
                id=uuid.uuid4(),
                session_id=key,
                role="bot",
                text=bot_text,
                audio_url=bot_audio_url,
                created_at=created_at + timedelta(microseconds=1),
            )
            session.add_all([user_message, bot_message])
            await session.flush()

            logger.debug(f"Persisted turn for session {session_id}: {user_message.id}, {bot_message.id}")
            return _message_record(user_message), _message_record(bot_message)

    async def list_messages(self, session_id: str) -> List[MessageRecord]:
        key = _parse_uuid(session_id)
        if key is None:
            return []

        async with self.db.session() as session:
            result = await session.execute(
                select(Message)
                .where(Message.session_id == key)
                .order_by(Message.created_at.asc())
            )
            return [_message_record(m) for m in result.scalars().all()]
