import logging
from datetime import datetime
from typing import Generator, Iterable, List, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from dmchat.config import settings
from dmchat.errors import NotFoundError, PersistenceError
from dmchat.utils import new_identifier, to_iso_utc, utc_now_iso

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=settings.SQL_ECHO,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("users", "messages", "chats", "chat_participants", "chat_messages")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from dmchat import models  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and every chat table exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            logger.debug("Database connectivity OK")

            inspector = inspect(conn)
            missing = [name for name in REQUIRED_TABLES if not inspector.has_table(name)]
            if missing:
                logger.error(f"Database schema not applied, missing tables: {missing}")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Identity Resolution
# =============================================================================

def create_user(db: Session, username: str):
    """
    Register an identity record for a username.

    Account management lives outside this service; this exists so that
    deployments and fixtures can seed the identities chats refer to.
    """
    from dmchat.models import User

    try:
        user = User(id=new_identifier(), username=username, created_at=utc_now_iso())
        db.add(user)
        db.commit()
        logger.info(f"User created: {username}")
        return user
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create user {username}: {e}")
        raise PersistenceError("Failed to create user") from e


def resolve_user_id(db: Session, username: str) -> Optional[str]:
    """
    Resolve one username to its identity id.

    Returns:
        The user id, or None when no such user exists
    """
    from dmchat.models import User

    try:
        user_id = db.query(User.id).filter(User.username == username).scalar()
    except SQLAlchemyError as e:
        logger.error(f"Failed to resolve user {username}: {e}")
        raise PersistenceError("Failed to resolve user") from e
    logger.debug(f"Resolved user {username}: {'found' if user_id else 'not found'}")
    return user_id


def resolve_user_ids(db: Session, usernames: Iterable[str]) -> List[str]:
    """
    Resolve a set of usernames to identity ids, preserving input order.

    Raises:
        PersistenceError: If any username does not resolve
    """
    from dmchat.models import User

    usernames = list(dict.fromkeys(usernames))
    try:
        rows = db.query(User.username, User.id).filter(User.username.in_(usernames)).all()
    except SQLAlchemyError as e:
        logger.error(f"Failed to resolve users {usernames}: {e}")
        raise PersistenceError("Failed to resolve users") from e

    by_username = {row.username: row.id for row in rows}
    if len(by_username) != len(usernames):
        missing = [name for name in usernames if name not in by_username]
        logger.warning(f"Some users not found: {missing}")
        raise PersistenceError("Some users not found")
    return [by_username[name] for name in usernames]


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_message(db: Session, msg: str, msg_from: str, msg_date_time: datetime):
    """
    Create a direct message after resolving its sender.

    Args:
        db: Database session
        msg: Message text
        msg_from: Sender username
        msg_date_time: Message timestamp

    Returns:
        The persisted Message, including its assigned id

    Raises:
        NotFoundError: If the sender does not resolve to a user
        PersistenceError: If the write fails
    """
    from dmchat.models import Message

    sender_id = resolve_user_id(db, msg_from)
    if sender_id is None:
        raise NotFoundError("User not found")

    try:
        message = Message(
            id=new_identifier(),
            msg=msg,
            msg_from=sender_id,
            msg_date_time=to_iso_utc(msg_date_time),
            type="direct",
            created_at=utc_now_iso(),
        )
        db.add(message)
        db.commit()
        logger.info(f"Message created: id={message.id}, from={msg_from}")
        return message
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create message from {msg_from}: {e}")
        raise PersistenceError("Failed to create message") from e


# =============================================================================
# Chat Repository Functions
# =============================================================================

def create_chat(db: Session, participant_ids: List[str], message_ids: List[str]):
    """
    Persist a new chat from already-resolved participant ids and already-persisted
    message ids. Neither is re-validated here.
    """
    from dmchat.models import Chat, ChatMessage, ChatParticipant

    try:
        now = utc_now_iso()
        chat = Chat(id=new_identifier(), created_at=now, updated_at=now)
        chat.participant_links = [ChatParticipant(user_id=user_id) for user_id in participant_ids]
        chat.message_links = [ChatMessage(message_id=message_id) for message_id in message_ids]
        db.add(chat)
        db.commit()
        logger.info(
            f"Chat created: id={chat.id}, participants={len(participant_ids)}, "
            f"messages={len(message_ids)}"
        )
        return chat
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to save chat: {e}")
        raise PersistenceError("Failed to save chat") from e


def get_chat(db: Session, chat_id: str):
    """
    Retrieve a chat by its id.

    Raises:
        NotFoundError: If no chat has this id
    """
    from dmchat.models import Chat

    try:
        chat = db.get(Chat, chat_id)
    except SQLAlchemyError as e:
        logger.error(f"Failed to get chat {chat_id}: {e}")
        raise PersistenceError("Failed to get chat") from e
    if chat is None:
        raise NotFoundError("Chat not found")
    return chat


def add_message_to_chat(db: Session, chat_id: str, message_id: str):
    """
    Append a message reference to the end of a chat's message sequence.

    Returns:
        The updated Chat

    Raises:
        NotFoundError: If the chat does not exist
    """
    from dmchat.models import ChatMessage

    chat = get_chat(db, chat_id)
    try:
        db.add(ChatMessage(chat_id=chat.id, message_id=message_id))
        chat.updated_at = utc_now_iso()
        db.commit()
        logger.info(f"Message {message_id} appended to chat {chat_id}")
        return chat
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to add message {message_id} to chat {chat_id}: {e}")
        raise PersistenceError("Failed to add message to chat") from e


def add_participant_to_chat(db: Session, chat_id: str, user_id: str):
    """
    Add a participant to a chat with set semantics.

    Adding a user who is already a participant leaves the chat unchanged.

    Returns:
        The updated Chat

    Raises:
        NotFoundError: If the chat does not exist
    """
    from dmchat.models import ChatParticipant

    chat = get_chat(db, chat_id)
    try:
        exists = (
            db.query(ChatParticipant.id)
            .filter(ChatParticipant.chat_id == chat_id, ChatParticipant.user_id == user_id)
            .first()
        )
        if exists:
            logger.info(f"User {user_id} already participates in chat {chat_id}")
            return chat

        db.add(ChatParticipant(chat_id=chat_id, user_id=user_id))
        chat.updated_at = utc_now_iso()
        db.commit()
        logger.info(f"User {user_id} added to chat {chat_id}")
        return chat
    except IntegrityError:
        # Concurrent insert of the same membership won the race
        db.rollback()
        logger.info(f"Duplicate participant detected: {user_id} in chat {chat_id}")
        return get_chat(db, chat_id)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to add participant {user_id} to chat {chat_id}: {e}")
        raise PersistenceError("Failed to add participant to chat") from e


def get_chats_by_participants(db: Session, usernames: Iterable[str]) -> list:
    """
    Retrieve the chats whose participants include all of the given usernames.

    Returns:
        Chats ordered by creation time; empty if any username is unknown
    """
    from dmchat.models import Chat, ChatParticipant, User

    usernames = list(dict.fromkeys(usernames))
    logger.info(f"Querying chats for participants: {usernames}")
    try:
        user_ids = db.query(User.id).filter(User.username.in_(usernames)).all()
        if not usernames or len(user_ids) != len(usernames):
            logger.debug("Not every participant resolved, no chat can match")
            return []

        query = db.query(Chat)
        for (user_id,) in user_ids:
            query = query.filter(Chat.participant_links.any(ChatParticipant.user_id == user_id))
        chats = query.order_by(Chat.created_at.asc(), Chat.id.asc()).all()
    except SQLAlchemyError as e:
        logger.error(f"Failed to query chats for {usernames}: {e}")
        raise PersistenceError("Failed to retrieve chats") from e

    logger.info(f"Found {len(chats)} chats for participants {usernames}")
    return chats
