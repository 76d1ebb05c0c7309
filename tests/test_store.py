import threading

import pytest

from studenthub_msg.errors import InvalidPayload, InvalidSender, NotFound
from studenthub_msg.store import ConversationStore, Message


def test_find_or_create_is_idempotent(store):
    first = store.find_or_create_conversation("u1", "u2")
    second = store.find_or_create_conversation("u1", "u2")
    assert first.id == second.id


def test_find_or_create_ignores_argument_order(store):
    assert (store.find_or_create_conversation("u1", "u2").id
            == store.find_or_create_conversation("u2", "u1").id)


def test_find_or_create_rejects_self_conversation(store):
    with pytest.raises(InvalidPayload):
        store.find_or_create_conversation("u1", "u1")


def test_find_or_create_from_many_threads_creates_one(store):
    results = []

    def worker(a, b):
        results.append(store.find_or_create_conversation(a, b).id)

    threads = [threading.Thread(target=worker, args=(("u1", "u2") if i % 2 else ("u2", "u1")))
               for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(set(results)) == 1
    assert len(store.list_conversations("u1")) == 1


def test_scenario_two_users_exchange_messages(store):
    c1 = store.find_or_create_conversation("u1", "u2")

    m1 = store.append_message(c1.id, "u1", "Hello", "text")
    assert store.list_messages(c1.id) == [m1]

    m2 = store.append_message(c1.id, "u2", "Hi back", "text")
    assert store.list_messages(c1.id) == [m1, m2]


def test_messages_come_back_in_creation_order(store, conversation):
    for i in range(25):
        store.append_message(conversation.id, "u1" if i % 2 else "u2", f"msg {i}")

    messages = store.list_messages(conversation.id)
    assert [m.content for m in messages] == [f"msg {i}" for i in range(25)]
    stamps = [m.created_at for m in messages]
    assert stamps == sorted(stamps)


def test_append_bumps_last_activity(store, conversation):
    message = store.append_message(conversation.id, "u1", "Room still available?")
    assert store.get_conversation(conversation.id).last_message_at == message.created_at


def test_append_to_unknown_conversation(store):
    with pytest.raises(NotFound):
        store.append_message("missing", "u1", "hello")


def test_append_from_outsider_is_rejected(store, conversation):
    with pytest.raises(InvalidSender):
        store.append_message(conversation.id, "u3", "let me in")
    assert store.list_messages(conversation.id) == []


@pytest.mark.parametrize("content", ["", "   ", None])
def test_append_requires_content(store, conversation, content):
    with pytest.raises(InvalidPayload):
        store.append_message(conversation.id, "u1", content)


def test_append_rejects_unknown_message_type(store, conversation):
    with pytest.raises(InvalidPayload):
        store.append_message(conversation.id, "u1", "hi", "sticker")


def test_list_messages_empty_and_unknown(store, conversation):
    assert store.list_messages(conversation.id) == []
    with pytest.raises(NotFound):
        store.list_messages("missing")


def test_list_conversations_most_recent_first(store):
    older = store.find_or_create_conversation("u1", "u2")
    newer = store.find_or_create_conversation("u1", "u3")
    store.find_or_create_conversation("u2", "u3")

    store.append_message(newer.id, "u3", "first")
    store.append_message(older.id, "u2", "second")

    assert [c.id for c in store.list_conversations("u1")] == [older.id, newer.id]
    assert store.list_conversations("nobody") == []


def test_other_participant(conversation):
    assert conversation.other_participant("u1") == "u2"
    assert conversation.other_participant("u2") == "u1"
    with pytest.raises(InvalidSender):
        conversation.other_participant("u3")


def test_message_wire_format(store, conversation):
    message = store.append_message(conversation.id, "u1", "Tiffin at 8?")
    data = message.to_dict()

    assert data["conversationId"] == conversation.id
    assert data["senderId"] == "u1"
    assert data["messageType"] == "text"
    assert data["createdAt"].endswith("Z")
    assert Message.from_dict(data) == message


def test_user_directory(store):
    user = store.add_user("Rahul Sharma", "rahul@example.com", "student", college="JEC")
    assert store.get_user(user.id) is user
    assert store.get_user_by_email("rahul@example.com") is user
    with pytest.raises(NotFound):
        store.get_user("missing")
    with pytest.raises(InvalidPayload):
        store.add_user("Other", "rahul@example.com")
    with pytest.raises(InvalidPayload):
        store.add_user("Chef", "chef@example.com", "chef")


def test_seed_sample_users_is_repeatable():
    store = ConversationStore()
    first = store.seed_sample_users()
    second = store.seed_sample_users()
    assert [u.id for u in first] == [u.id for u in second]
    assert {u.user_type for u in first} == {"student", "room_owner", "tiffin_provider"}
