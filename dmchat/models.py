"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

Chats hold ordered references to participants and messages through the
chat_participants and chat_messages link tables. Link rows use an
autoincrement key so that insertion order is the display order.
"""

from sqlalchemy import Column, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from dmchat.storage import Base


class User(Base):
    """
    Identity record. Usernames are resolved to ids at the request boundary.

    Table: users
    """
    __tablename__ = "users"

    id = Column(String(32), primary_key=True)
    username = Column(String, nullable=False, unique=True, index=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601


class Message(Base):
    """
    A single direct message. Immutable once created.

    Table: messages
    """
    __tablename__ = "messages"

    id = Column(String(32), primary_key=True)
    msg = Column(Text, nullable=False)
    msg_from = Column(String(32), ForeignKey("users.id"), nullable=False, index=True)
    msg_date_time = Column(String, nullable=False)  # ISO-8601 UTC string
    type = Column(String, nullable=False, default="direct")
    created_at = Column(String, nullable=False)

    sender = relationship("User", lazy="joined")


class Chat(Base):
    """
    Table: chats
    """
    __tablename__ = "chats"

    id = Column(String(32), primary_key=True)
    created_at = Column(String, nullable=False, index=True)
    updated_at = Column(String, nullable=False)

    participant_links = relationship(
        "ChatParticipant",
        order_by="ChatParticipant.id",
        cascade="all, delete-orphan",
    )
    message_links = relationship(
        "ChatMessage",
        order_by="ChatMessage.id",
        cascade="all, delete-orphan",
    )


class ChatParticipant(Base):
    """
    Participant membership. Unique per (chat, user) for add-to-set semantics.

    Table: chat_participants
    """
    __tablename__ = "chat_participants"
    __table_args__ = (UniqueConstraint("chat_id", "user_id", name="uq_chat_participant"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(String(32), ForeignKey("chats.id"), nullable=False, index=True)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=False, index=True)

    user = relationship("User", lazy="joined")


class ChatMessage(Base):
    """
    Append-only message reference. A message belongs to at most one chat.

    Table: chat_messages
    """
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(String(32), ForeignKey("chats.id"), nullable=False, index=True)
    message_id = Column(String(32), ForeignKey("messages.id"), nullable=False, unique=True)

    message = relationship("Message", lazy="joined")
