"""Unit tests for bulk sessions and the progress channel."""
import json

import pytest

from app.core.bulk.channel import KEEPALIVE_FRAME, ChannelRegistry, ProgressChannel
from app.core.bulk.errors import ChannelClosedError, InvalidTransitionError, SessionNotFoundError
from app.core.bulk.session import (
    BulkSession,
    Operation,
    Outcome,
    RecordDetail,
    SessionRegistry,
    SessionState,
)


def _detail(index, outcome, status="created"):
    return RecordDetail(index=index, username=f"user{index}", outcome=outcome, status=status)


# ─────────────────────────────────────────────────────────────────────────────
# Sessions
# ─────────────────────────────────────────────────────────────────────────────
def test_counts_always_add_up_to_processed():
    session = BulkSession(Operation.IMPORT, total=4)
    session.record_outcome(_detail(0, Outcome.SUCCESS))
    session.record_outcome(_detail(1, Outcome.FAILED, "failed"))
    session.record_outcome(_detail(2, Outcome.SKIPPED, "skipped"))

    counts = session.counts
    assert counts == {"success": 1, "failed": 1, "skipped": 1}
    assert sum(counts.values()) == session.processed == 3
    assert session.summary()["results"] == {"created": 1, "failed": 1, "skipped": 1}


def test_processed_never_exceeds_total():
    session = BulkSession(Operation.DELETE, total=1)
    session.record_outcome(_detail(0, Outcome.SUCCESS, "deleted"))
    with pytest.raises(InvalidTransitionError):
        session.record_outcome(_detail(1, Outcome.SUCCESS, "deleted"))


def test_illegal_transition_rejected():
    session = BulkSession(Operation.IMPORT)
    with pytest.raises(InvalidTransitionError):
        session.transition(SessionState.COMPLETED)
    session.transition(SessionState.RUNNING)
    session.transition(SessionState.COMPLETED)
    with pytest.raises(InvalidTransitionError):
        session.transition(SessionState.RUNNING)


def test_prompt_claimed_only_while_awaiting():
    session = BulkSession(Operation.IMPORT)
    session.transition(SessionState.RUNNING)
    with pytest.raises(InvalidTransitionError) as exc_info:
        session.claim_prompt(SessionState.AWAITING_CONFLICT)
    assert exc_info.value.status_code == 409

    session.open_prompt(SessionState.AWAITING_CONFLICT)
    with pytest.raises(InvalidTransitionError):
        session.claim_prompt(SessionState.AWAITING_INVALID_POPULATION)
    session.claim_prompt(SessionState.AWAITING_CONFLICT)
    assert session.state is SessionState.RUNNING

    # a second answer to the same prompt is refused
    with pytest.raises(InvalidTransitionError):
        session.claim_prompt(SessionState.AWAITING_CONFLICT)


def test_stale_prompt_generation_is_refused():
    session = BulkSession(Operation.IMPORT)
    session.transition(SessionState.RUNNING)
    first = session.open_prompt(SessionState.AWAITING_INVALID_POPULATION)
    session.claim_prompt(SessionState.AWAITING_INVALID_POPULATION)
    second = session.open_prompt(SessionState.AWAITING_INVALID_POPULATION)

    assert second == first + 1 == session.prompt_generation
    with pytest.raises(InvalidTransitionError):
        session.claim_prompt(SessionState.AWAITING_INVALID_POPULATION, first)
    session.claim_prompt(SessionState.AWAITING_INVALID_POPULATION, second)


def test_reopen_prompt_after_failed_claim():
    session = BulkSession(Operation.IMPORT)
    session.transition(SessionState.RUNNING)
    session.open_prompt(SessionState.AWAITING_CONFLICT)
    session.claim_prompt(SessionState.AWAITING_CONFLICT)
    session.reopen_prompt(SessionState.AWAITING_CONFLICT)
    assert session.state is SessionState.AWAITING_CONFLICT


def test_cancel_is_refused_after_finish():
    session = BulkSession(Operation.IMPORT)
    session.request_cancel()
    assert session.cancel_requested
    assert not session.future.done()

    session.transition(SessionState.CANCELLED)
    with pytest.raises(InvalidTransitionError):
        session.request_cancel()


def test_registry_keeps_finished_sessions_for_status():
    registry = SessionRegistry(history_size=1)
    first = registry.add(BulkSession(Operation.IMPORT))
    second = registry.add(BulkSession(Operation.IMPORT))
    registry.finish(first.session_id)

    with pytest.raises(SessionNotFoundError):
        registry.get(first.session_id)
    assert registry.lookup(first.session_id) is first

    registry.finish(second.session_id)
    with pytest.raises(SessionNotFoundError) as exc_info:
        registry.lookup(first.session_id)
    assert exc_info.value.status_code == 404


def test_detail_dict_uses_api_names():
    detail = RecordDetail(0, "alice", Outcome.SUCCESS, "modified", remote_id="u-1",
                          changes={"title": "CTO"}, lookup_method="email")
    assert detail.to_dict() == {
        "index": 0,
        "username": "alice",
        "status": "modified",
        "pingOneId": "u-1",
        "changes": {"title": "CTO"},
        "lookupMethod": "email",
    }


# ─────────────────────────────────────────────────────────────────────────────
# Channel
# ─────────────────────────────────────────────────────────────────────────────
def test_events_are_buffered_in_order_and_framed():
    channel = ProgressChannel("s-1")
    channel.emit("progress", {"current": 1})
    channel.emit("complete", {"current": 2})

    frames = list(channel.frames(keepalive_interval=0.01))
    assert frames[0] == 'event: progress\ndata: {"current": 1}\n\n'
    assert frames[1].startswith("event: complete\n")
    assert json.loads(frames[1].split("data: ", 1)[1]) == {"current": 2}
    assert len(frames) == 2


def test_nothing_follows_a_terminal_event():
    channel = ProgressChannel("s-1")
    channel.emit("error", {"message": "boom"})
    with pytest.raises(ChannelClosedError):
        channel.emit("progress", {"current": 1})
    assert channel.closed


def test_unknown_event_type_rejected():
    with pytest.raises(ValueError):
        ProgressChannel("s-1").emit("bogus", {})


def test_keepalive_sent_while_idle():
    channel = ProgressChannel("s-1")
    frames = channel.frames(keepalive_interval=0.01)
    assert next(frames) == KEEPALIVE_FRAME
    channel.emit("close", {"reason": "cancelled"})
    assert next(frames).startswith("event: close")


def test_registry_removes_mapping_after_terminal_delivery():
    registry = ChannelRegistry()
    channel = registry.create("s-1")
    channel.emit("complete", {})

    frames = list(registry.stream("s-1", keepalive_interval=0.01))
    assert frames[-1].startswith("event: complete")
    assert "s-1" not in registry


def test_registry_keeps_mapping_when_subscriber_drops_early():
    registry = ChannelRegistry()
    channel = registry.create("s-1")
    channel.emit("progress", {"current": 1})

    stream = registry.stream("s-1", keepalive_interval=0.01)
    next(stream)
    stream.close()
    assert "s-1" in registry


def test_unknown_session_stream_is_404():
    with pytest.raises(SessionNotFoundError):
        ChannelRegistry().stream("missing")


def test_stale_closed_channels_are_pruned():
    registry = ChannelRegistry(retention_seconds=0)
    old = registry.create("old")
    old.emit("complete", {})
    old.closed_at -= 1
    registry.create("new")
    assert "old" not in registry
    assert "new" in registry
