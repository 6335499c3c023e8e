"""
Tests for the store functions and chat hydration.

Tests cover:
- Identity resolution (single, many, mismatch)
- Message creation and sender resolution
- Chat creation, message append order and participant set semantics
- Membership queries ("contains all of")
- Hydrated chat shape
- Timestamp parsing
"""

import uuid
from datetime import datetime, timezone

import pytest

from dmchat import storage
from dmchat.errors import NotFoundError, PersistenceError
from dmchat.population import populate_chat
from dmchat.utils import parse_timestamp


NOON = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def new_chat(db, users, names, message_ids=()):
    return storage.create_chat(db, [users[name] for name in names], list(message_ids))


class TestIdentityResolution:

    def test_resolve_one(self, db, db_users):
        assert storage.resolve_user_id(db, "alice") == db_users["alice"]

    def test_resolve_one_missing(self, db, db_users):
        assert storage.resolve_user_id(db, "mallory") is None

    def test_resolve_many_preserves_input_order(self, db, db_users):
        ids = storage.resolve_user_ids(db, ["carol", "alice", "bob"])

        assert ids == [db_users["carol"], db_users["alice"], db_users["bob"]]

    def test_resolve_many_mismatch(self, db, db_users):
        with pytest.raises(PersistenceError, match="Some users not found"):
            storage.resolve_user_ids(db, ["alice", "mallory"])


class TestMessageStore:

    def test_create_message(self, db, db_users):
        message = storage.create_message(db, "hello", "alice", NOON)

        assert len(message.id) == 32
        assert message.msg == "hello"
        assert message.msg_from == db_users["alice"]
        assert message.msg_date_time == "2025-01-15T12:00:00.000Z"
        assert message.type == "direct"

    def test_create_message_unknown_sender(self, db, db_users):
        with pytest.raises(NotFoundError, match="User not found"):
            storage.create_message(db, "hello", "mallory", NOON)


class TestChatStore:

    def test_create_chat(self, db, db_users):
        message = storage.create_message(db, "hi", "alice", NOON)

        chat = new_chat(db, db_users, ["alice", "bob"], [message.id])

        assert [link.user_id for link in chat.participant_links] == [db_users["alice"], db_users["bob"]]
        assert [link.message_id for link in chat.message_links] == [message.id]
        assert chat.created_at == chat.updated_at

    def test_get_chat_missing(self, db, db_users):
        with pytest.raises(NotFoundError, match="Chat not found"):
            storage.get_chat(db, uuid.uuid4().hex)

    def test_append_preserves_order(self, db, db_users):
        chat = new_chat(db, db_users, ["alice", "bob"])
        first = storage.create_message(db, "one", "alice", NOON)
        second = storage.create_message(db, "two", "bob", NOON)

        storage.add_message_to_chat(db, chat.id, first.id)
        updated = storage.add_message_to_chat(db, chat.id, second.id)

        assert [link.message_id for link in updated.message_links] == [first.id, second.id]

    def test_appends_from_two_sessions_are_both_kept(self, db, db_users):
        chat = new_chat(db, db_users, ["alice", "bob"])
        first = storage.create_message(db, "one", "alice", NOON)
        second = storage.create_message(db, "two", "bob", NOON)

        with storage.SessionLocal() as other:
            # Both sessions hold the chat before either append lands
            storage.get_chat(other, chat.id)
            storage.add_message_to_chat(db, chat.id, first.id)
            storage.add_message_to_chat(other, chat.id, second.id)

        assert [m.id for m in populate_chat(db, chat.id).messages] == [first.id, second.id]

    def test_append_to_missing_chat(self, db, db_users):
        message = storage.create_message(db, "one", "alice", NOON)

        with pytest.raises(NotFoundError):
            storage.add_message_to_chat(db, uuid.uuid4().hex, message.id)

    def test_add_participant_set_semantics(self, db, db_users):
        chat = new_chat(db, db_users, ["alice", "bob"])

        storage.add_participant_to_chat(db, chat.id, db_users["carol"])
        updated = storage.add_participant_to_chat(db, chat.id, db_users["carol"])

        assert [link.user_id for link in updated.participant_links] == [
            db_users["alice"], db_users["bob"], db_users["carol"]
        ]

    def test_add_existing_participant_keeps_updated_at(self, db, db_users):
        chat = new_chat(db, db_users, ["alice", "bob"])
        before = chat.updated_at

        updated = storage.add_participant_to_chat(db, chat.id, db_users["alice"])

        assert updated.updated_at == before
        assert len(updated.participant_links) == 2

    def test_add_participant_missing_chat(self, db, db_users):
        with pytest.raises(NotFoundError):
            storage.add_participant_to_chat(db, uuid.uuid4().hex, db_users["carol"])


class TestMembershipQuery:

    def test_contains_all_of(self, db, db_users):
        ab = new_chat(db, db_users, ["alice", "bob"])
        abc = new_chat(db, db_users, ["alice", "bob", "carol"])
        new_chat(db, db_users, ["alice", "carol"])
        new_chat(db, db_users, ["bob", "dave"])

        chats = storage.get_chats_by_participants(db, ["alice", "bob"])

        assert {chat.id for chat in chats} == {ab.id, abc.id}

    def test_single_participant(self, db, db_users):
        new_chat(db, db_users, ["alice", "bob"])
        bd = new_chat(db, db_users, ["bob", "dave"])

        chats = storage.get_chats_by_participants(db, ["dave"])

        assert [chat.id for chat in chats] == [bd.id]

    def test_unknown_username_matches_nothing(self, db, db_users):
        new_chat(db, db_users, ["alice", "bob"])

        assert storage.get_chats_by_participants(db, ["alice", "mallory"]) == []
        assert storage.get_chats_by_participants(db, []) == []


class TestPopulateChat:

    def test_hydrated_shape(self, db, db_users):
        message = storage.create_message(db, "hi", "bob", NOON)
        chat = new_chat(db, db_users, ["alice", "bob"], [message.id])

        populated = populate_chat(db, chat.id).to_json()

        assert populated["_id"] == chat.id
        assert populated["participants"] == [
            {"_id": db_users["alice"], "username": "alice"},
            {"_id": db_users["bob"], "username": "bob"},
        ]
        assert populated["messages"] == [
            {
                "_id": message.id,
                "msg": "hi",
                "msgFrom": "bob",
                "msgDateTime": "2025-01-15T12:00:00.000Z",
                "type": "direct",
                "user": {"_id": db_users["bob"], "username": "bob"},
            }
        ]
        assert set(populated) == {"_id", "participants", "messages", "createdAt", "updatedAt"}

    def test_sees_appends_made_in_same_session(self, db, db_users):
        chat = new_chat(db, db_users, ["alice", "bob"])
        assert populate_chat(db, chat.id).messages == []

        message = storage.create_message(db, "late", "alice", NOON)
        storage.add_message_to_chat(db, chat.id, message.id)

        assert [m.msg for m in populate_chat(db, chat.id).messages] == ["late"]

    def test_missing_chat(self, db, db_users):
        with pytest.raises(NotFoundError):
            populate_chat(db, uuid.uuid4().hex)


class TestParseTimestamp:

    def test_trailing_z_is_utc(self):
        assert parse_timestamp("2025-01-15T12:00:00Z") == NOON

    def test_offset_is_converted_to_utc(self):
        assert parse_timestamp("2025-01-15T13:00:00+01:00") == NOON

    def test_naive_is_taken_as_utc(self):
        assert parse_timestamp("2025-01-15T12:00:00") == NOON

    @pytest.mark.parametrize(
        "value",
        [
            "9999-12-31T23:59:59-01:00",
            "0001-01-01T00:00:00+01:00",
            "2025-01-15TZ12:00:00",
            "Z2025-01-15T12:00:00",
            "",
        ],
    )
    def test_rejected(self, value):
        with pytest.raises(ValueError):
            parse_timestamp(value)
