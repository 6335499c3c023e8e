"""
Hydration of stored chats into the documents clients consume.

A stored chat only holds references: participant ids and message ids, and
each message holds its sender id. populate_chat expands all of them so that
participants and message senders carry their usernames.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dmchat import storage
from dmchat.errors import PersistenceError
from dmchat.schemas import ChatResponse, MessageResponse, UserResponse

logger = logging.getLogger(__name__)


def _user_response(user) -> UserResponse:
    return UserResponse(id=user.id, username=user.username)


def _message_response(message) -> MessageResponse:
    sender = _user_response(message.sender)
    return MessageResponse(
        id=message.id,
        msg=message.msg,
        msg_from=sender.username,
        msg_date_time=message.msg_date_time,
        type=message.type,
        user=sender,
    )


def populate_chat(db: Session, chat_id: str) -> ChatResponse:
    """
    Load a chat and expand its participant and message references.

    Args:
        db: Database session
        chat_id: Chat to hydrate

    Returns:
        The fully hydrated chat

    Raises:
        NotFoundError: If the chat does not exist
        PersistenceError: If loading any referenced record fails
    """
    chat = storage.get_chat(db, chat_id)
    try:
        # Fresh read so references appended in this session are visible
        db.expire(chat)
        participants = [_user_response(link.user) for link in chat.participant_links]
        messages = [_message_response(link.message) for link in chat.message_links]
        created_at, updated_at = chat.created_at, chat.updated_at
    except SQLAlchemyError as e:
        logger.error(f"Failed to populate chat {chat_id}: {e}")
        raise PersistenceError("Failed to populate chat") from e
    except AttributeError as e:
        # A dangling reference (deleted user or message) leaves None behind
        logger.error(f"Chat {chat_id} holds an unresolvable reference: {e}")
        raise PersistenceError("Failed to populate chat") from e

    logger.debug(
        f"Populated chat {chat_id}: {len(participants)} participants, {len(messages)} messages"
    )
    return ChatResponse(
        id=chat.id,
        participants=participants,
        messages=messages,
        created_at=created_at,
        updated_at=updated_at,
    )
