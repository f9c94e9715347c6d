"""Unit tests for the JSON-backed memory store."""

from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from mira.storage.errors import PersistenceError
from mira.storage.memory import MemoryStore
from mira.storage.models import CredentialRecord, conversation_label


class StepClock:
    def __init__(self, start: datetime, step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now += self.step
        return current


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def test_messages_are_read_in_append_order(store):
    for i in range(5):
        store.append_message("u1", "c1", "user" if i % 2 == 0 else "assistant", f"m{i}")

    messages = store.list_messages("u1", "c1")

    assert [m.content for m in messages] == ["m0", "m1", "m2", "m3", "m4"]


def test_identical_timestamps_keep_insertion_order(tmp_path):
    frozen = datetime(2024, 1, 1, 12, 0, 0)
    store = MemoryStore(fs_root=str(tmp_path), clock=lambda: frozen)
    for i in range(4):
        store.append_message("u1", "c1", "user", f"m{i}")

    assert [m.content for m in store.list_messages("u1", "c1")] == ["m0", "m1", "m2", "m3"]


def test_limit_returns_most_recent_in_ascending_order(store):
    for i in range(10):
        store.append_message("u1", "c1", "user", f"m{i}")

    assert [m.content for m in store.list_messages("u1", "c1", limit=3)] == ["m7", "m8", "m9"]
    assert store.list_messages("u1", "c1", limit=0) == []


def test_reads_are_scoped_by_owner(store):
    store.append_message("u1", "shared-id", "user", "mine")
    store.append_message("u2", "shared-id", "user", "theirs")

    assert [m.content for m in store.list_messages("u1", "shared-id")] == ["mine"]
    assert [c.conversation_id for c in store.list_conversations("u2")] == ["shared-id"]


def test_threaded_appends_keep_each_conversation_ordered(store):
    def converse(conversation_id):
        for turn in range(10):
            store.append_message("u1", conversation_id, "user", f"{conversation_id} q{turn}")
            store.append_message("u1", conversation_id, "assistant", f"{conversation_id} a{turn}")

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(converse, ["c0", "c1", "c2", "c3"]))

    for conversation_id in ["c0", "c1", "c2", "c3"]:
        history = store.list_messages("u1", conversation_id)
        assert history == sorted(history, key=lambda m: m.sort_key)
        assert [m.role for m in history] == ["user", "assistant"] * 10
        assert history[0].content == f"{conversation_id} q0"
        assert history[-1].content == f"{conversation_id} a9"


def test_list_conversations_most_recent_first(tmp_path):
    clock = StepClock(datetime(2024, 1, 1))
    store = MemoryStore(fs_root=str(tmp_path), clock=clock)
    store.append_message("u1", "old", "user", "first question")
    store.append_message("u1", "new", "user", "second question")
    store.append_message("u1", "old", "assistant", "late reply")

    summaries = store.list_conversations("u1")

    assert [s.conversation_id for s in summaries] == ["old", "new"]
    assert summaries[0].label == "first question"
    assert summaries[0].message_count == 2
    assert summaries[0].first_timestamp == datetime(2024, 1, 1)


def test_conversation_label_truncates_long_text():
    label = conversation_label("word " * 40)
    assert len(label) <= 60
    assert label.endswith("...")


def test_delete_conversation_returns_count_and_is_idempotent(store):
    store.append_message("u1", "c1", "user", "a")
    store.append_message("u1", "c1", "assistant", "b")

    assert store.delete_conversation("u1", "c1") == 2
    assert store.delete_conversation("u1", "c1") == 0
    assert store.list_conversations("u1") == []


def test_delete_does_not_touch_other_owner(store):
    store.append_message("u1", "c1", "user", "a")
    store.append_message("u2", "c1", "user", "b")

    assert store.delete_conversation("u1", "c1") == 1
    assert len(store.list_messages("u2", "c1")) == 1


def test_feedback_is_last_write_wins_and_owner_scoped(store):
    msg = store.append_message("u1", "c1", "assistant", "reply")

    assert store.set_feedback("u1", msg.id, "good") is True
    assert store.set_feedback("u1", msg.id, "bad") is True
    assert store.set_feedback("u2", msg.id, "good") is False
    assert store.set_feedback("u1", "missing", "good") is False
    assert store.list_messages("u1", "c1")[0].feedback == "bad"


def test_legacy_roles_are_normalized(store):
    store.append_message("u1", "c1", "mira", "old persona reply")
    store.append_message("u1", "c1", "model", "old gemini reply")
    assert {m.role for m in store.list_messages("u1", "c1")} == {"assistant"}


def test_state_survives_restart(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    msg = store.append_message("u1", "c1", "user", "persisted")
    store.set_feedback("u1", msg.id, "good")
    store.save_credential(
        CredentialRecord(user_id="u1", provider="openai", ciphertext="ct", nonce="nn")
    )

    reloaded = MemoryStore(fs_root=str(tmp_path))

    messages = reloaded.list_messages("u1", "c1")
    assert [m.content for m in messages] == ["persisted"]
    assert messages[0].feedback == "good"
    assert reloaded.get_credential("u1", "openai").ciphertext == "ct"
    # the sequence continues past reloaded messages
    later = reloaded.append_message("u1", "c1", "assistant", "after restart")
    assert later.seq > messages[0].seq


def test_failed_persist_leaves_no_partial_message(store):
    store.append_message("u1", "c1", "user", "kept")
    with patch.object(store, "_state_path") as state_path:
        state_path.return_value.write_text.side_effect = OSError("disk full")
        with pytest.raises(PersistenceError):
            store.append_message("u1", "c1", "assistant", "lost")

    assert [m.content for m in store.list_messages("u1", "c1")] == ["kept"]
    assert len(store.messages) == 1


def test_failed_persist_of_first_message_leaves_no_conversation(store):
    with patch.object(store, "_state_path") as state_path:
        state_path.return_value.write_text.side_effect = OSError("disk full")
        with pytest.raises(PersistenceError):
            store.append_message("u1", "new", "user", "lost")

    assert store.list_conversations("u1") == []


@contextmanager
def _failing_disk(store):
    with patch.object(store, "_state_path") as state_path:
        state_path.return_value.write_text.side_effect = OSError("disk full")
        yield


def test_failed_delete_keeps_conversation(store):
    store.append_message("u1", "c1", "user", "kept")
    with _failing_disk(store):
        with pytest.raises(PersistenceError):
            store.delete_conversation("u1", "c1")

    assert [m.content for m in store.list_messages("u1", "c1")] == ["kept"]
    assert len(store.messages) == 1


def test_failed_feedback_keeps_previous_rating(store):
    msg = store.append_message("u1", "c1", "assistant", "reply")
    store.set_feedback("u1", msg.id, "good")
    with _failing_disk(store):
        with pytest.raises(PersistenceError):
            store.set_feedback("u1", msg.id, "bad")

    assert store.list_messages("u1", "c1")[0].feedback == "good"


def test_failed_credential_save_restores_previous(store):
    store.save_credential(CredentialRecord("u1", "anthropic", "old", "n0"))
    with _failing_disk(store):
        with pytest.raises(PersistenceError):
            store.save_credential(CredentialRecord("u1", "openai", "ct", "n1"))
        with pytest.raises(PersistenceError):
            store.save_credential(CredentialRecord("u1", "anthropic", "new", "n2"))

    assert store.get_credential("u1", "openai") is None
    assert store.get_credential("u1", "anthropic").ciphertext == "old"


def test_failed_credential_delete_keeps_record(store):
    store.save_credential(CredentialRecord("u1", "openai", "ct", "n1"))
    with _failing_disk(store):
        with pytest.raises(PersistenceError):
            store.delete_credential("u1", "openai")

    assert store.get_credential("u1", "openai") is not None


def test_credentials_upsert_and_delete(store):
    store.save_credential(CredentialRecord("u1", "openai", "ct1", "n1"))
    store.save_credential(CredentialRecord("u1", "openai", "ct2", "n2"))
    store.save_credential(CredentialRecord("u2", "openai", "ct3", "n3"))

    assert [r.ciphertext for r in store.list_credentials("u1")] == ["ct2"]
    assert store.delete_credential("u1", "openai") is True
    assert store.delete_credential("u1", "openai") is False
    assert store.get_credential("u1", "openai") is None
    assert store.get_credential("u2", "openai").ciphertext == "ct3"
