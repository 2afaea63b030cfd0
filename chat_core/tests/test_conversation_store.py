import pytest

from chat_core.domain.conversation import DEFAULT_TITLE
from chat_core.domain.exceptions import UnknownConversationError, UnknownMessageError, ValidationError
from chat_core.domain.models import Attachment
from chat_core.store import EMPTY_MESSAGES, ConversationStore


def test_get_messages_returns_stable_empty_value():
    store = ConversationStore()
    assert store.get_messages() is EMPTY_MESSAGES
    assert store.get_messages() is store.get_messages()
    cid = store.create_conversation()
    assert store.get_messages(cid) is EMPTY_MESSAGES


def test_add_message_without_conversation_creates_one():
    store = ConversationStore()
    mid = store.add_message("user", "Hello")
    messages = store.get_messages()
    assert len(messages) == 1
    assert messages[0].id == mid
    assert messages[0].content == "Hello"
    assert store.current_conversation_id is not None


def test_create_conversation_reuses_empty_one():
    store = ConversationStore()
    id1 = store.create_conversation()
    id2 = store.create_conversation()
    assert id1 == id2
    assert len(store.list_conversations()) == 1

    store.add_message("user", "Hello")
    id3 = store.create_conversation()
    assert id3 != id1
    assert len(store.list_conversations()) == 2
    # 最新创建的排在最前
    assert [c.id for c in store.list_conversations()] == [id3, id1]


def test_create_conversation_prefers_any_empty_conversation():
    store = ConversationStore()
    empty_id = store.create_conversation()
    other = store.create_conversation()
    assert other == empty_id
    store.add_message("user", "busy")
    fresh = store.create_conversation()
    store.set_current_conversation(empty_id)
    assert store.create_conversation() == fresh
    assert store.current_conversation_id == fresh


def test_unread_counter_only_for_non_current_conversation():
    store = ConversationStore()
    id1 = store.create_conversation()
    store.add_message("user", "Msg 1")
    id2 = store.create_conversation()
    store.add_message("user", "Other")

    store.set_current_conversation(id1)
    store.add_message("user", "Msg 2")
    assert store.get_conversation(id1).unread_count == 0

    store.set_current_conversation(id2)
    store.add_message("assistant", "Msg 3", conversation_id=id1)

    conv1 = store.get_conversation(id1)
    assert conv1.unread_count == 1
    assert len(conv1.messages) == 3
    assert store.get_conversation(id2).unread_count == 0

    store.set_current_conversation(id1)
    assert store.get_conversation(id1).unread_count == 0


def test_title_is_derived_once_from_first_user_message():
    store = ConversationStore()
    cid = store.create_conversation()
    assert store.get_conversation(cid).title == DEFAULT_TITLE
    long_text = "How do I make a part spin forever in my game please"
    store.add_message("user", long_text)
    title = store.get_conversation(cid).title
    assert title.endswith("...")
    assert title[:-3] == long_text[:30].strip()

    store.add_message("user", "Second question")
    assert store.get_conversation(cid).title == title


def test_title_not_derived_from_assistant_first_message():
    store = ConversationStore()
    cid = store.create_conversation()
    store.add_message("assistant", "Welcome!")
    store.add_message("user", "Short")
    assert store.get_conversation(cid).title == DEFAULT_TITLE


def test_short_title_kept_verbatim():
    store = ConversationStore()
    cid = store.create_conversation()
    store.add_message("user", "  Hello  ")
    assert store.get_conversation(cid).title == "Hello"


def test_set_current_conversation_unknown_id_fails_loudly():
    store = ConversationStore()
    with pytest.raises(UnknownConversationError):
        store.set_current_conversation("c-missing")
    assert store.current_conversation_id is None


def test_delete_current_conversation_selects_newest_remaining():
    store = ConversationStore()
    id1 = store.create_conversation()
    store.add_message("user", "one")
    id2 = store.create_conversation()
    store.add_message("user", "two")
    id3 = store.create_conversation()
    store.add_message("user", "three")

    store.delete_conversation(id3)
    assert store.current_conversation_id == id2
    store.delete_conversation(id1)
    assert store.current_conversation_id == id2
    store.delete_conversation(id2)
    assert store.current_conversation_id is None
    with pytest.raises(UnknownConversationError):
        store.delete_conversation(id2)


def test_update_message_keeps_order_and_count():
    store = ConversationStore()
    ids = [store.add_message("user", f"m{i}", status="sending") for i in range(4)]
    store.update_message(ids[2], "changed", "sent")
    messages = store.get_messages()
    assert [m.id for m in messages] == ids
    assert [m.content for m in messages] == ["m0", "m1", "changed", "m3"]
    assert messages[2].status == "sent"
    assert messages[1].status == "sending"


def test_update_message_across_conversations():
    store = ConversationStore()
    id1 = store.create_conversation()
    mid = store.add_message("user", "first")
    store.create_conversation()
    store.add_message("user", "second")
    store.update_message(mid, "edited")
    assert store.get_messages(id1)[0].content == "edited"
    with pytest.raises(UnknownMessageError):
        store.update_message("m-missing", "x")


def test_status_never_moves_backwards():
    store = ConversationStore()
    mid = store.add_message("assistant", "", status="sending")
    store.update_message(mid, "", "delivered")
    with pytest.raises(ValidationError) as exc:
        store.update_message(mid, "", "sent")
    assert exc.value.code == "INVALID_STATUS_TRANSITION"
    store.update_message(mid, "", "read")
    with pytest.raises(ValidationError):
        store.update_message(mid, "", "error")


def test_streaming_content_cannot_shrink():
    store = ConversationStore()
    mid = store.add_message("assistant", "", is_streaming=True, status="sending")
    store.update_message(mid, "Hello")
    with pytest.raises(ValidationError) as exc:
        store.update_message(mid, "Hel")
    assert exc.value.code == "STREAM_CONTENT_SHRANK"
    store.set_message_streaming(mid, False)
    store.update_message(mid, "Replaced")
    assert store.get_message(mid).content == "Replaced"
    assert store.get_message(mid).is_streaming is False


def test_delete_message_removes_from_its_conversation():
    store = ConversationStore()
    keep = store.add_message("user", "X")
    drop = store.add_message("assistant", "Y")
    store.delete_message(drop)
    assert [m.id for m in store.get_messages()] == [keep]
    with pytest.raises(UnknownMessageError):
        store.get_message(drop)


def test_drafts_are_kept_per_conversation():
    store = ConversationStore()
    id1 = store.create_conversation()
    store.set_draft(id1, "Draft 1")
    store.add_message("user", "Hello")
    id2 = store.create_conversation()
    store.set_draft(id2, "Draft 2")

    assert store.get_draft(id1) == "Draft 1"
    assert store.get_draft(id2) == "Draft 2"
    store.set_current_conversation(id1)
    assert store.get_conversation(id1).draft == "Draft 1"


def test_selectors_return_copies():
    store = ConversationStore()
    mid = store.add_message("user", "first draft")
    messages = store.get_messages()
    messages[0].content = "tampered"
    conv = store.current_conversation()
    conv.messages.clear()
    conv.title = "tampered"
    assert store.get_message(mid).content == "first draft"
    assert len(store.get_messages()) == 1
    assert store.current_conversation().title == "first draft"


def test_pending_attachments_lifecycle():
    store = ConversationStore()
    a1 = Attachment.create("image", "cat.png", "blob:1", base64="AAAA", mime_type="image/png", size=3)
    a2 = Attachment.create("file", "notes.txt", "blob:2", base64="aGk=", mime_type="text/plain", size=2)
    store.add_attachment(a1)
    store.add_attachment(a2)
    store.remove_attachment(a1.id)
    assert store.pending_attachments == (a2,)
    assert store.take_pending_attachments() == (a2,)
    assert store.pending_attachments == ()
    store.add_attachment(a1)
    store.clear_attachments()
    assert store.pending_attachments == ()


def test_search_and_pagination():
    store = ConversationStore()
    for i in range(12):
        store.create_conversation()
        store.add_message("user", f"topic {i}")
    store.add_message("assistant", "Vector3 math explained")

    assert len(store.search_conversations("")) == 12
    hits = store.search_conversations("vector3")
    assert len(hits) == 1
    assert hits[0].title == "topic 11"
    assert len(store.search_conversations("TOPIC 1")) == 3

    assert store.visible_conversations_count == 10
    assert len(store.visible_conversations()) == 10
    assert store.has_more_conversations()
    assert store.load_more_conversations() == 20
    assert len(store.visible_conversations()) == 12
    assert not store.has_more_conversations()


def test_transient_flags_are_not_persisted():
    store = ConversationStore()
    store.set_loading(True)
    store.set_assistant_typing(True)
    store.add_attachment(Attachment.create("file", "a.txt", "blob:a"))
    state = store.to_state()
    assert set(state) == {"conversations", "currentConversationId"}
    assert store.is_loading() and store.is_assistant_typing()


def test_loading_and_typing_flags_are_tracked_per_conversation():
    store = ConversationStore()
    store.set_loading(True, "c-a")
    store.set_loading(True, "c-b")
    store.set_assistant_typing(True, "c-a")
    store.set_assistant_typing(True, "c-b")

    store.set_assistant_typing(False, "c-a")
    assert store.is_assistant_typing("c-b")
    assert not store.is_assistant_typing("c-a")

    store.set_loading(False, "c-b")
    assert store.is_loading()
    assert store.is_loading("c-a")
    assert not store.is_loading("c-b")
    store.set_loading(False, "c-a")
    assert not store.is_loading()
