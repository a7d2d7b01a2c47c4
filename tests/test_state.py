from datetime import datetime, timezone

import pytest

from coach_messaging.client.state import (
    CanonicalRefreshed,
    ComposerEdited,
    LastMessageUpdated,
    MessageSubmitted,
    MessagingState,
    MessagingStore,
    PageFailed,
    PageReceived,
    PageRequested,
    PendingDiscarded,
    RetryRequested,
    SearchChanged,
    SendFailed,
    SendSucceeded,
    reduce,
)
from coach_messaging.schemas.messaging import Conversation, Message, Participant


NOW = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _conversation(cid: str) -> Conversation:
    return Conversation(
        id=cid,
        kind="coach_client",
        participants=[Participant(user_id="coach-1"), Participant(user_id=f"client-{cid}")],
        created_at=NOW,
        updated_at=NOW,
    )


def _message(mid: str, key: str = None, content: str = "hi") -> Message:
    return Message(id=mid, conversation_id="c1", sender_id="coach-1", content=content, created_at=NOW, client_message_id=key)


def _submitted(store: MessagingStore, temp_id: str, content: str = "hi") -> None:
    store.dispatch(MessageSubmitted("c1", temp_id, f"key-{temp_id}", content, None, NOW))


def test_submit_appends_sending_entry_and_clears_composer():
    store = MessagingStore()
    store.dispatch(ComposerEdited("c1", "hello"))
    _submitted(store, "t1", "hello")

    entry, = store.state.pending_for("c1")
    assert entry.status == "sending"
    assert entry.content == "hello"
    assert store.state.composer("c1").is_empty


def test_failure_restores_composer_and_retry_clears_it():
    store = MessagingStore()
    _submitted(store, "t1", "hello")
    store.dispatch(SendFailed("c1", "t1", "offline"))

    composer = store.state.composer("c1")
    assert composer.content == "hello"
    assert composer.restored_from == "t1"
    assert store.state.find_pending("c1", "t1").status == "failed"

    store.dispatch(RetryRequested("c1", "t1", "key-t1", "hello", None))
    assert store.state.find_pending("c1", "t1").status == "sending"
    assert store.state.composer("c1").is_empty


def test_retry_and_discard_only_apply_to_failed_entries():
    store = MessagingStore()
    _submitted(store, "t1")
    before = store.state

    store.dispatch(RetryRequested("c1", "t1", "other", "changed", None))
    store.dispatch(PendingDiscarded("c1", "t1"))

    assert store.state == before


def test_sent_entry_is_removed_only_when_canonical_list_contains_it():
    store = MessagingStore()
    _submitted(store, "t1")
    store.dispatch(SendSucceeded("c1", "t1", _message("m1", "key-t1")))
    assert store.state.find_pending("c1", "t1").status == "sent"

    store.dispatch(CanonicalRefreshed("c1", ()))
    assert store.state.find_pending("c1", "t1") is not None

    store.dispatch(CanonicalRefreshed("c1", (_message("m1", "key-t1"),)))
    assert store.state.pending_for("c1") == ()


def test_failed_entry_found_on_server_takes_its_restored_draft_with_it():
    store = MessagingStore()
    _submitted(store, "t1", "hello")
    store.dispatch(SendFailed("c1", "t1", "connection reset"))
    assert store.state.composer("c1").restored_from == "t1"

    store.dispatch(CanonicalRefreshed("c1", (_message("m1", "key-t1", "hello"),)))

    assert store.state.pending_for("c1") == ()
    assert store.state.composer("c1").is_empty
    assert store.state.composer("c1").restored_from is None


def test_identical_content_is_reconciled_by_key_not_content():
    store = MessagingStore()
    _submitted(store, "t1", "ok")
    _submitted(store, "t2", "ok")
    store.dispatch(SendSucceeded("c1", "t1", _message("m1", "key-t1", "ok")))

    store.dispatch(CanonicalRefreshed("c1", (_message("m1", "key-t1", "ok"),)))

    remaining, = store.state.pending_for("c1")
    assert remaining.temp_id == "t2"


def test_sequence_follows_submission_order():
    store = MessagingStore()
    for temp_id in ("a", "b", "c"):
        _submitted(store, temp_id)
    assert [p.sequence for p in store.state.pending_for("c1")] == [1, 2, 3]


def test_page_offset_zero_replaces_and_later_pages_append_without_duplicates():
    store = MessagingStore()
    generation = store.state.conversations.generation
    store.dispatch(PageRequested(generation, 0))
    store.dispatch(PageReceived(generation, 0, (_conversation("a"), _conversation("b")), True))
    store.dispatch(PageRequested(generation, 2))
    store.dispatch(PageReceived(generation, 2, (_conversation("b"), _conversation("c")), False))

    conversations = store.state.conversations
    assert [c.id for c in conversations.items] == ["a", "b", "c"]
    assert conversations.next_offset == 4
    assert not conversations.has_more

    store.dispatch(PageRequested(generation, 0))
    store.dispatch(PageReceived(generation, 0, (_conversation("z"),), False))
    assert [c.id for c in store.state.conversations.items] == ["z"]


def test_page_for_superseded_generation_is_ignored():
    store = MessagingStore()
    store.dispatch(PageRequested(0, 0))
    store.dispatch(SearchChanged("anna"))
    store.dispatch(PageReceived(0, 0, (_conversation("stale"),), False))

    assert store.state.conversations.items == ()
    assert store.state.conversations.generation == 1


def test_page_failure_keeps_loaded_items():
    store = MessagingStore()
    store.dispatch(PageRequested(0, 0))
    store.dispatch(PageReceived(0, 0, (_conversation("a"),), True))
    store.dispatch(PageRequested(0, 1))
    store.dispatch(PageFailed(0, 1, "timeout"))

    conversations = store.state.conversations
    assert [c.id for c in conversations.items] == ["a"]
    assert conversations.error == "timeout"
    assert not conversations.loading


def test_last_message_update_keeps_position():
    store = MessagingStore()
    store.dispatch(PageRequested(0, 0))
    store.dispatch(PageReceived(0, 0, (_conversation("a"), _conversation("b")), False))
    store.dispatch(LastMessageUpdated("b", _message("m9", content="latest")))

    items = store.state.conversations.items
    assert [c.id for c in items] == ["a", "b"]
    assert items[1].last_message.content == "latest"


def test_unknown_event_is_rejected():
    with pytest.raises(TypeError):
        reduce(MessagingState(), object())


def test_store_notifies_subscribers_until_unsubscribed():
    store = MessagingStore()
    seen = []
    unsubscribe = store.subscribe(lambda event, state: seen.append(type(event).__name__))
    store.dispatch(ComposerEdited("c1", "a"))
    unsubscribe()
    store.dispatch(ComposerEdited("c1", "b"))

    assert seen == ["ComposerEdited"]
