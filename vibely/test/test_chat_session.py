"""
Tests for ConversationSession: first-send creation, sending, listening and
the two-party receipt flow over a shared in-memory store.
"""

import pytest
import asyncio
import random
import threading

from vibely.models.chat import Conversation, MessageStatus
from vibely.services.chat_session import ConversationSession, SessionState
from vibely.services.memory_store import InMemoryMessageStore
from vibely.services.message_store import Subscription
from vibely.utils.errors import (
    InvalidInput,
    NotAuthenticated,
    PersistenceFailure,
    SessionClosed,
    SubscriptionFailure,
)
from conftest import make_message


class CapturingStore(InMemoryMessageStore):
    """Hands the session's callbacks to the test instead of wiring them up."""

    def subscribe(self, conversation_id, on_snapshot, on_error=None, order_field="timestamp"):
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.cancelled = False

        def _cancel():
            self.cancelled = True

        return Subscription(_cancel)


class ThreadedStore(InMemoryMessageStore):
    """Delivers snapshots from a foreign thread, like the Firestore listener."""

    def _publish(self, conversation_id):
        publish = super()._publish
        worker = threading.Thread(target=publish, args=(conversation_id,))
        worker.start()
        worker.join()


async def _existing_conversation(store, *messages):
    cid = await store.create_conversation(
        Conversation(participants=["alice", "bob"]), make_message("m0", "alice", text="first")
    )
    for msg in messages:
        await store.append_message(cid, msg)
    return cid


# ---------------------------------------------------------------------------
# Detached sessions and the first send
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_open_without_id_is_detached(store):
    session = ConversationSession(store, "alice", peer_id="bob").open()

    assert session.state is SessionState.detached
    assert session.conversation_id is None
    assert session.messages == []
    assert store.calls == []


@pytest.mark.asyncio
async def test_first_send_creates_conversation_and_listens(store):
    session = ConversationSession(store, "alice", peer_id="bob").open()
    session.set_draft("hello")

    sent = await session.send()

    assert session.state is SessionState.listening
    assert session.conversation_id is not None
    assert [m.id for m in store.messages_of(session.conversation_id)] == [sent.id]
    assert [m.text for m in session.messages] == ["hello"]
    assert session.messages[0].status is MessageStatus.sent
    assert session.draft == ""
    assert len(store.calls_of("create_conversation")) == 1
    assert store.calls_of("append_message") == []


@pytest.mark.asyncio
async def test_first_send_failure_creates_nothing(store):
    """Either a conversation with exactly one message exists, or nothing does."""
    session = ConversationSession(store, "alice", peer_id="bob").open()
    session.set_draft("hello")
    store.fail_on("create_conversation")

    with pytest.raises(PersistenceFailure):
        await session.send()

    assert session.state is SessionState.detached
    assert session.conversation_id is None
    assert session.draft == "hello"
    assert await store.list_conversations("alice") == []

    # Retry goes through
    await session.send()
    conversations = await store.list_conversations("alice")
    assert len(conversations) == 1
    assert len(store.messages_of(conversations[0].id)) == 1


@pytest.mark.asyncio
async def test_concurrent_first_sends_create_one_conversation(store):
    session = ConversationSession(store, "alice", peer_id="bob").open()

    await asyncio.gather(session.send("one"), session.send("two"))

    assert len(store.calls_of("create_conversation")) == 1
    assert [m.text for m in store.messages_of(session.conversation_id)] == ["one", "two"]


@pytest.mark.asyncio
async def test_detached_needs_peer(store):
    with pytest.raises(InvalidInput):
        ConversationSession(store, "alice").open()


@pytest.mark.asyncio
async def test_detached_rejects_chat_with_self(store):
    session = ConversationSession(store, "alice", peer_id="alice")
    with pytest.raises(InvalidInput):
        session.open()
    assert session.pending_conversation is None
    assert store.calls == []


# ---------------------------------------------------------------------------
# send()
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_whitespace_only_makes_no_store_calls(store):
    cid = await _existing_conversation(store)
    session = ConversationSession(store, "alice").open(cid)
    calls_before = list(store.calls)

    with pytest.raises(InvalidInput):
        await session.send("   ")
    with pytest.raises(InvalidInput):
        await session.send("")

    assert store.calls == calls_before


@pytest.mark.asyncio
async def test_non_string_text_is_invalid(store):
    cid = await _existing_conversation(store)
    session = ConversationSession(store, "alice").open(cid)
    calls_before = list(store.calls)

    with pytest.raises(InvalidInput):
        await session.send(42)
    assert store.calls == calls_before


@pytest.mark.asyncio
async def test_text_is_stored_as_typed(store):
    cid = await _existing_conversation(store)
    session = ConversationSession(store, "alice").open(cid)

    sent = await session.send("  spaced out \n")

    assert sent.text == "  spaced out \n"
    assert store.messages_of(cid)[-1].text == "  spaced out \n"


@pytest.mark.asyncio
async def test_send_without_identity(store):
    cid = await _existing_conversation(store)
    session = ConversationSession(store, None).open(cid)

    with pytest.raises(NotAuthenticated):
        await session.send("hi")
    assert store.calls_of("append_message") == []


@pytest.mark.asyncio
async def test_failed_append_keeps_draft(store):
    cid = await _existing_conversation(store)
    session = ConversationSession(store, "alice").open(cid)
    session.set_draft("  don't lose me ✨ ")
    before = session.draft
    store.fail_on("append_message")

    with pytest.raises(PersistenceFailure):
        await session.send()

    assert session.draft == before
    assert [m.id for m in session.messages] == ["m0"]


@pytest.mark.asyncio
async def test_draft_edited_during_send_is_kept():
    store = InMemoryMessageStore()
    cid = await _existing_conversation(store)
    session = ConversationSession(store, "alice").open(cid)
    session.set_draft("first")

    original_append = store.append_message

    async def slow_append(conversation_id, message):
        session.set_draft("typing more")
        await original_append(conversation_id, message)

    store.append_message = slow_append
    await session.send()
    assert session.draft == "typing more"


@pytest.mark.asyncio
async def test_send_order_follows_timestamps_not_completion():
    """a, b, c stay in send order even when the writes finish c, b, a."""

    class SlowStore(InMemoryMessageStore):
        def __init__(self):
            super().__init__()
            self.gates = {}

        async def append_message(self, conversation_id, message):
            gate = self.gates.get(message.text)
            if gate is not None:
                await gate.wait()
            await super().append_message(conversation_id, message)

    store = SlowStore()
    store.gates = {t: asyncio.Event() for t in "abc"}
    cid = await _existing_conversation(store)
    session = ConversationSession(store, "alice").open(cid)

    tasks = [asyncio.create_task(session.send(t)) for t in "abc"]
    await asyncio.sleep(0)
    for t in "cba":
        store.gates[t].set()
        await asyncio.sleep(0)
    await asyncio.gather(*tasks)

    assert [m.text for m in session.messages] == ["first", "a", "b", "c"]


@pytest.mark.asyncio
async def test_send_on_closed_session(store):
    cid = await _existing_conversation(store)
    session = ConversationSession(store, "alice").open(cid)
    session.close()

    with pytest.raises(SessionClosed):
        await session.send("hi")


# ---------------------------------------------------------------------------
# Listening, close and errors
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_close_is_idempotent_and_stops_updates(store):
    cid = await _existing_conversation(store)
    session = ConversationSession(store, "alice").open(cid)

    session.close()
    session.close()
    await store.append_message(cid, make_message("m1", "bob", offset=1))

    assert session.state is SessionState.closed
    assert [m.id for m in session.messages] == ["m0"]
    assert store.subscriber_count(cid) == 0


@pytest.mark.asyncio
async def test_snapshots_from_other_threads_are_marshalled():
    store = ThreadedStore()
    cid = await _existing_conversation(store)
    session = ConversationSession(store, "alice").open(cid)

    # Nothing applied until the owning loop runs the handed-over callback
    assert session.messages == []
    await asyncio.sleep(0)
    assert [m.id for m in session.messages] == ["m0"]


@pytest.mark.asyncio
async def test_late_snapshot_after_close_is_ignored():
    store = ThreadedStore()
    cid = await _existing_conversation(store)
    session = ConversationSession(store, "alice").open(cid)
    session.close()

    await asyncio.sleep(0)
    assert session.messages == []


@pytest.mark.asyncio
async def test_listener_sees_every_snapshot(store):
    cid = await _existing_conversation(store)
    session = ConversationSession(store, "alice")
    seen = []
    session.add_listener(lambda messages, advanced: seen.append([m.id for m in messages]))
    session.open(cid)

    await session.send("next")
    assert seen[0] == ["m0"]
    assert len(seen[-1]) == 2


@pytest.mark.asyncio
async def test_subscription_failure_keeps_last_good_list():
    store = CapturingStore()
    cid = await _existing_conversation(store)
    errors = []
    session = ConversationSession(store, "alice")
    session.add_listener(lambda messages, advanced: None, errors.append)
    session.open(cid)

    store.on_snapshot([make_message("m0", "alice")])
    store.on_error(RuntimeError("permission revoked"))
    store.on_snapshot([])

    assert isinstance(session.error, SubscriptionFailure)
    assert errors == [session.error]
    assert store.cancelled
    assert [m.id for m in session.messages] == ["m0"]
    assert session.state is SessionState.listening
    assert session.needs_reopen

    # A new open() resumes
    session.open(cid)
    assert session.error is None
    assert not session.needs_reopen
    store.on_snapshot([make_message("m0", "alice"), make_message("m1", "bob", offset=1)])
    assert len(session.messages) == 2
    await session.settle()


@pytest.mark.asyncio
async def test_delete_cascades_and_closes(store):
    cid = await _existing_conversation(store, make_message("m1", "bob", offset=1))
    session = ConversationSession(store, "alice").open(cid)

    await session.delete()

    assert session.state is SessionState.closed
    assert await store.get_conversation(cid) is None


# ---------------------------------------------------------------------------
# Two-party receipts
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_two_party_sent_delivered_seen(store):
    alice = ConversationSession(store, "alice", peer_id="bob").open()
    m1 = await alice.send("hi")
    cid = alice.conversation_id
    assert alice.messages[0].status is MessageStatus.sent

    bob = ConversationSession(store, "bob").open(cid)
    await bob.settle()
    assert store.messages_of(cid)[0].status is MessageStatus.delivered
    assert alice.messages[0].status is MessageStatus.delivered
    assert bob.messages[0].id == m1.id

    bob.set_foreground(True)
    await bob.settle()
    assert store.messages_of(cid)[0].status is MessageStatus.seen
    assert alice.messages[0].status is MessageStatus.seen

    # Exactly the receiver's two writes; alice never touched her own message
    assert [args[2] for args in store.calls_of("update_message_status")] == [
        MessageStatus.delivered, MessageStatus.seen
    ]
    await alice.settle()
    assert alice._reconciler.pending == 0


@pytest.mark.asyncio
async def test_advanced_reports_status_changes_once(store):
    alice = ConversationSession(store, "alice", peer_id="bob").open()
    await alice.send("hi")
    advanced = []
    alice.add_listener(lambda messages, moved: advanced.extend((m.id, m.status) for m in moved))

    bob = ConversationSession(store, "bob").open(alice.conversation_id)
    bob.set_foreground(True)
    await bob.settle()
    bob.set_foreground(True)
    await bob.settle()

    statuses = [status for _, status in advanced]
    assert statuses == [MessageStatus.delivered, MessageStatus.seen]


@pytest.mark.asyncio
async def test_status_write_failure_heals_on_next_snapshot(store):
    alice = ConversationSession(store, "alice", peer_id="bob").open()
    await alice.send("hi")
    store.fail_on("update_message_status")

    bob = ConversationSession(store, "bob").open(alice.conversation_id)
    await bob.settle()
    assert store.messages_of(alice.conversation_id)[0].status is MessageStatus.sent

    # Any new snapshot re-derives the missing receipt
    await alice.send("still there?")
    await bob.settle()
    assert all(m.status is MessageStatus.delivered for m in store.messages_of(alice.conversation_id))


@pytest.mark.asyncio
async def test_observed_status_never_regresses_under_stale_snapshots():
    rng = random.Random(2025)
    for _ in range(20):
        store = CapturingStore()
        cid = await _existing_conversation(store)
        # The viewer sent everything, so only the delivered snapshots matter
        session = ConversationSession(store, "alice").open(cid)

        history = []
        statuses = {f"m{i}": MessageStatus.sent for i in range(4)}
        for _ in range(8):
            message_id = rng.choice(list(statuses))
            current = statuses[message_id]
            if current is not MessageStatus.seen:
                statuses[message_id] = MessageStatus.delivered if current is MessageStatus.sent else MessageStatus.seen
            history.append([make_message(mid, "alice", st, offset=i) for i, (mid, st) in enumerate(statuses.items())])

        rng.shuffle(history)
        observed = {}
        for snapshot in history:
            store.on_snapshot(snapshot)
            for msg in session.messages:
                assert msg.status.rank >= observed.get(msg.id, -1)
                observed[msg.id] = msg.status.rank


@pytest.mark.asyncio
async def test_random_interleaving_converges_monotonically(store):
    rng = random.Random(99)
    alice = ConversationSession(store, "alice", peer_id="bob").open()
    await alice.send("start")
    bob = ConversationSession(store, "bob").open(alice.conversation_id)

    observed = {}
    regressions = []

    def check(messages, advanced):
        for msg in messages:
            if msg.status.rank < observed.get(msg.id, -1):
                regressions.append(msg.id)
            observed[msg.id] = msg.status.rank

    alice.add_listener(check)

    for step in range(40):
        action = rng.random()
        if action < 0.4:
            await alice.send(f"msg {step}")
        elif action < 0.6:
            store.fail_on("update_message_status")
        elif action < 0.8:
            bob.set_foreground(rng.random() < 0.5)
        if rng.random() < 0.5:
            await bob.settle()

    bob.set_foreground(True)
    await alice.send("last")
    await bob.settle()
    bob.set_foreground(True)
    await bob.settle()

    assert all(m.status is MessageStatus.seen for m in store.messages_of(alice.conversation_id))
    assert regressions == []
