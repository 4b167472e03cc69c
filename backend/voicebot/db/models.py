"""
SQLAlchemy models for the conversation database.
Agents own documents and sessions; sessions own messages.
"""

from sqlalchemy import Column, String, Text, TIMESTAMP, ForeignKey
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
import uuid

Base = declarative_base()


class Agent(Base):
    """
    Configured persona: system prompt plus a document set.
    """
    __tablename__ = "agents"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    prompt = Column(
        Text,
        nullable=True,
        default="You are a helpful AI assistant. Answer questions based on the provided documents.",
    )
    api_key = Column(String(255), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)

    documents = relationship("Document", back_populates="agent", cascade="all, delete-orphan")
    sessions = relationship("ConversationSession", back_populates="agent", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Agent(id={self.id}, name={self.name})>"


class Document(Base):
    """
    Uploaded document. content_text is the extracted raw text, used as the
    retrieval fallback; chunk embeddings live in Pinecone.
    """
    __tablename__ = "documents"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    agent_id = Column(UUID(as_uuid=True), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)

    file_name = Column(String(255), nullable=False)
    file_type = Column(String(50), nullable=False)
    file_path = Column(Text, nullable=False)
    content_text = Column(Text, nullable=True)

    uploaded_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)

    agent = relationship("Agent", back_populates="documents")

    def __repr__(self):
        return f"<Document(id={self.id}, file_name={self.file_name})>"


class ConversationSession(Base):
    """
    Conversation between a user and an agent. Once ended_at is set the
    session accepts no new turns.
    """
    __tablename__ = "sessions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    agent_id = Column(UUID(as_uuid=True), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)
    started_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    ended_at = Column(TIMESTAMP(timezone=True), nullable=True)

    agent = relationship("Agent", back_populates="sessions")
    messages = relationship(
        "Message",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="Message.created_at",
    )

    def __repr__(self):
        return f"<ConversationSession(id={self.id}, agent_id={self.agent_id}, ended_at={self.ended_at})>"


class Message(Base):
    """
    One side of a turn (role 'user' or 'bot').
    """
    __tablename__ = "messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id = Column(UUID(as_uuid=True), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    role = Column(String(10), nullable=False)
    text = Column(Text, nullable=False)
    audio_url = Column(Text, nullable=True)
    # Set by the application so the two messages of a turn never share a timestamp
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)

    session = relationship("ConversationSession", back_populates="messages")

    def __repr__(self):
        return f"<Message(id={self.id}, session_id={self.session_id}, role={self.role})>"
