"""
Chat request handling.

ChatHandler validates incoming payloads, runs the store operations in order,
hydrates the result and, for creations and new messages, broadcasts it over
the realtime channel. Every operation returns a Result: Ok with the hydrated
chat(s), or Err carrying a ValidationError, NotFoundError or PersistenceError.

Store and hydration steps are blocking SQLAlchemy calls and run in the
threadpool; only the broadcast is awaited on the event loop.

There are no retries and no rollback across steps. If chat creation fails
after seed messages were stored, those messages stay behind unreferenced;
likewise a message whose append fails remains stored.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Type

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from dmchat import population, storage
from dmchat.errors import ChatError, Err, NotFoundError, Ok, PersistenceError, Result, ValidationError
from dmchat.metrics import record_chat_operation
from dmchat.realtime import ChatNotifier
from dmchat.schemas import (
    AddMessageRequest,
    AddParticipantRequest,
    ChatResponse,
    CreateChatRequest,
)
from dmchat.utils import is_valid_identifier

logger = logging.getLogger(__name__)

EVENT_CREATED = "created"
EVENT_NEW_MESSAGE = "newMessage"

_RESULT_LABELS = {
    ValidationError: "validation_error",
    NotFoundError: "not_found",
    PersistenceError: "persistence_error",
}


def result_label(error: ChatError) -> str:
    """Outcome label used in logs and metrics."""
    return _RESULT_LABELS.get(type(error), "persistence_error")


def _first_error(exc: PydanticValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error['msg']}" if location else error["msg"]


def _parse(model: Type[BaseModel], body: Any, message: str):
    """Validate a raw JSON body against a request model."""
    if not isinstance(body, dict):
        raise ValidationError(message)
    try:
        return model.model_validate(body)
    except PydanticValidationError as e:
        logger.debug(f"{message}: {_first_error(e)}")
        raise ValidationError(f"{message}: {_first_error(e)}") from e


def _require_identifier(value: Any, name: str = "chatId") -> str:
    if not is_valid_identifier(value):
        raise ValidationError(f"Invalid {name}")
    return value


class ChatHandler:
    """
    Orchestrates chat operations for one request.

    Args:
        db: Database session scoped to the request
        notifier: Realtime broadcaster, injected rather than looked up globally
    """

    def __init__(self, db: Session, notifier: ChatNotifier):
        self.db = db
        self.notifier = notifier

    async def _run(self, operation: str, action: Callable) -> Result:
        try:
            value = await action()
        except ChatError as e:
            result = result_label(e)
            logger.warning(f"{operation} failed: {e.message}", extra={"operation": operation, "result": result})
            record_chat_operation(operation, result)
            return Err(e)
        except Exception as e:
            logger.exception(f"{operation} failed unexpectedly: {e}")
            record_chat_operation(operation, "persistence_error")
            return Err(PersistenceError(f"Failed to {operation.replace('_', ' ')}"))
        record_chat_operation(operation, "ok")
        return Ok(value)

    # =========================================================================
    # Store steps (blocking; run in the threadpool)
    # =========================================================================

    def _store_chat(self, request: CreateChatRequest) -> ChatResponse:
        participant_ids = storage.resolve_user_ids(self.db, request.participants)
        message_ids = []
        for seed in request.messages:
            message = storage.create_message(
                self.db,
                msg=seed.msg,
                msg_from=seed.msg_from,
                msg_date_time=seed.msg_date_time or datetime.now(timezone.utc),
            )
            message_ids.append(message.id)

        chat = storage.create_chat(self.db, participant_ids, message_ids)
        return population.populate_chat(self.db, chat.id)

    def _append_message(self, chat_id: str, request: AddMessageRequest) -> ChatResponse:
        # Fail on a missing chat before storing a message that cannot be appended
        storage.get_chat(self.db, chat_id)
        message = storage.create_message(
            self.db,
            msg=request.msg,
            msg_from=request.msg_from,
            msg_date_time=request.msg_date_time or datetime.now(timezone.utc),
        )
        chat = storage.add_message_to_chat(self.db, chat_id, message.id)
        return population.populate_chat(self.db, chat.id)

    def _chats_for(self, username: str) -> List[ChatResponse]:
        chats = storage.get_chats_by_participants(self.db, [username])
        try:
            return [population.populate_chat(self.db, chat.id) for chat in chats]
        except ChatError as e:
            raise PersistenceError("Failed to retrieve chats") from e

    def _store_participant(self, chat_id: str, request: AddParticipantRequest) -> ChatResponse:
        storage.get_chat(self.db, chat_id)
        user_id: Optional[str] = storage.resolve_user_id(self.db, request.participant)
        if user_id is None:
            raise NotFoundError("User not found")

        chat = storage.add_participant_to_chat(self.db, chat_id, user_id)
        return population.populate_chat(self.db, chat.id)

    # =========================================================================
    # Operations
    # =========================================================================

    async def create_chat(self, body: Any) -> Result:
        """
        Create a chat from participant usernames and optional seed messages,
        then announce it to every connected client.
        """
        async def action() -> ChatResponse:
            request = _parse(CreateChatRequest, body, "Invalid chat creation request")
            populated = await run_in_threadpool(self._store_chat, request)
            # No client can have joined the new chat's room yet
            await self.notifier.broadcast(EVENT_CREATED, populated)
            return populated

        return await self._run("create_chat", action)

    async def add_message(self, chat_id: Any, body: Any) -> Result:
        """Append a direct message to a chat and notify the chat's room."""
        async def action() -> ChatResponse:
            _require_identifier(chat_id)
            request = _parse(AddMessageRequest, body, "Invalid message request")
            populated = await run_in_threadpool(self._append_message, chat_id, request)
            await self.notifier.broadcast(EVENT_NEW_MESSAGE, populated, room=chat_id)
            return populated

        return await self._run("add_message", action)

    async def get_chat(self, chat_id: Any) -> Result:
        """Return one hydrated chat."""
        async def action() -> ChatResponse:
            _require_identifier(chat_id)
            return await run_in_threadpool(population.populate_chat, self.db, chat_id)

        return await self._run("get_chat", action)

    async def get_chats_by_user(self, username: Any) -> Result:
        """
        Return every chat the user participates in.

        All or nothing: if any chat fails to hydrate the whole listing fails.
        """
        async def action() -> List[ChatResponse]:
            if not isinstance(username, str) or not username.strip():
                raise ValidationError("Invalid username")
            return await run_in_threadpool(self._chats_for, username)

        return await self._run("get_chats_by_user", action)

    async def add_participant(self, chat_id: Any, body: Any) -> Result:
        """
        Add a user to a chat's participants. Idempotent.

        Unlike creation and new messages, no realtime event is sent.
        """
        async def action() -> ChatResponse:
            _require_identifier(chat_id)
            request = _parse(AddParticipantRequest, body, "Invalid participant")
            return await run_in_threadpool(self._store_participant, chat_id, request)

        return await self._run("add_participant", action)
