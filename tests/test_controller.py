"""
Tests for the session controller.
"""

import asyncio

import pytest

from trate_session.errors import ProtocolError, SessionClosedError, TransportError
from trate_session.models import Role, SessionState, Turn
from trate_session.session import (
    CompactionStatus,
    InMemoryKVStore,
    SessionController,
    SessionStateStore,
)
from trate_session.session.persistence import serialize


def make_controller(llm, state_store, **kwargs) -> SessionController:
    kwargs.setdefault("model", "chat-model")
    kwargs.setdefault("summary_model", "summary-model")
    kwargs.setdefault("window_size", 6)
    return SessionController(llm=llm, state_store=state_store, **kwargs)


async def fill_window(controller: SessionController, exchanges: int = 3) -> None:
    for i in range(exchanges):
        await controller.send_user_turn(f"question {i}")


@pytest.mark.asyncio
async def test_send_user_turn(llm, state_store):
    """Test a single exchange."""
    controller = make_controller(llm, state_store)

    result = await controller.send_user_turn("Hello!")

    assert result.reply_text == "reply 1"
    assert result.usage.total_tokens == 120
    assert controller.window.snapshot() == (Turn.user("Hello!"), Turn.assistant("reply 1"))
    assert controller.ledger.stats.session_total_tokens == 120
    assert controller.ledger.stats.last_request_input_tokens == 100
    assert controller.ledger.stats.last_response_output_tokens == 20


@pytest.mark.asyncio
async def test_request_layout(llm, state_store):
    """Test the system turn followed by the window."""
    controller = make_controller(llm, state_store, system_prompt="Be brief.")
    controller.summary.set("- user is Alex")

    await controller.send_user_turn("Hi")

    request = llm.chat_requests[0]
    assert request[0].role == Role.SYSTEM
    assert request[0].text.startswith("Be brief.")
    assert "- user is Alex" in request[0].text
    assert request[1:] == [Turn.user("Hi")]


@pytest.mark.asyncio
async def test_request_without_summary(llm, state_store):
    """Test that an empty summary is left out of the system turn."""
    controller = make_controller(llm, state_store, system_prompt="Be brief.")

    await controller.send_user_turn("Hi")

    assert llm.chat_requests[0][0] == Turn.system("Be brief.")


@pytest.mark.asyncio
async def test_temperature_forwarded(llm, state_store):
    """Test that the chosen temperature reaches the model."""
    controller = make_controller(llm, state_store, temperature=0.3)

    await controller.send_user_turn("Hi")

    assert llm.requests[-1][2] == 0.3


@pytest.mark.asyncio
async def test_temperature_omitted_for_reasoning_models(llm, state_store):
    """Test that temperature is dropped for models without support."""
    controller = make_controller(llm, state_store, model="o3-mini", temperature=0.3)

    await controller.send_user_turn("Hi")

    model, _, temperature = llm.requests[-1]
    assert model == "o3-mini"
    assert temperature is None


@pytest.mark.asyncio
async def test_full_window_starts_compaction(llm, state_store):
    """Test the fresh window after six stored turns and a seventh send."""
    controller = make_controller(llm, state_store)
    await fill_window(controller)
    assert len(controller.window) == 6
    assert controller.window.is_full()

    llm.summary_gate = asyncio.Event()
    result = await controller.send_user_turn("seventh")

    # The chat request only saw the new user turn
    assert llm.chat_requests[-1][1:] == [Turn.user("seventh")]
    assert controller.window.snapshot() == (Turn.user("seventh"), Turn.assistant(result.reply_text))
    assert controller.is_compacting
    assert controller.summary.value == ""

    llm.summary_gate.set()
    compaction = await controller.wait_for_compaction()

    assert compaction.success
    assert compaction.compacted_turns == 6
    assert controller.summary.value == "- summary #1"
    assert not controller.is_compacting
    assert state_store.load().summary == "- summary #1"


@pytest.mark.asyncio
async def test_summary_request_contains_compacted_turns(llm, state_store):
    """Test that the compacted snapshot is what gets summarized."""
    controller = make_controller(llm, state_store)
    await fill_window(controller)

    await controller.send_user_turn("next")
    await controller.wait_for_compaction()

    summary_turns = [turns for model, turns, _ in llm.requests if model == "summary-model"][0]
    transcript = summary_turns[1].text
    for i in range(3):
        assert f"USER: question {i}" in transcript
    assert "next" not in transcript


@pytest.mark.asyncio
async def test_window_cleared_is_persisted_before_reply(llm, state_store):
    """Test that the cleared window is stored before the reply arrives."""
    controller = make_controller(llm, state_store)
    await fill_window(controller)

    stored_during_request = []

    original = llm.complete

    async def complete(model, turns, temperature=None):
        if model == "chat-model":
            stored_during_request.append(state_store.load().last_messages)
        return await original(model, turns, temperature)

    llm.complete = complete
    await controller.send_user_turn("seventh")
    await controller.wait_for_compaction()

    assert stored_during_request == [[Turn.user("seventh")]]


@pytest.mark.asyncio
async def test_single_compaction_while_running(llm, state_store):
    """Test that a trigger during a running compaction is dropped."""
    controller = make_controller(llm, state_store)
    await fill_window(controller)

    llm.summary_gate = asyncio.Event()
    await controller.send_user_turn("a")
    await asyncio.sleep(0)
    assert llm.summary_calls == 1

    # Fill the fresh window and go past it while the first compaction is held
    for text in ("b", "c", "d", "e"):
        await controller.send_user_turn(text)

    assert llm.summary_calls == 1
    assert controller.compactor.runs == 1
    assert len(controller.window) == 6

    llm.summary_gate.set()
    await controller.wait_for_compaction()
    assert controller.summary.value == "- summary #1"


@pytest.mark.asyncio
async def test_compaction_runs_again_after_previous_finished(llm, state_store):
    """Test successive compactions fold into one summary."""
    controller = make_controller(llm, state_store)

    await fill_window(controller)
    await controller.send_user_turn("round two")
    await controller.wait_for_compaction()
    await fill_window(controller, exchanges=2)
    await controller.send_user_turn("round three")
    await controller.wait_for_compaction()

    assert llm.summary_calls == 2
    assert controller.summary.value == "- summary #2"
    second_request = [turns for model, turns, _ in llm.requests if model == "summary-model"][1]
    assert "- summary #1" in second_request[1].text


@pytest.mark.asyncio
async def test_cancelled_compaction_allows_next_one(llm, state_store):
    """Test that a compaction cancelled mid-call does not block later ones."""
    controller = make_controller(llm, state_store)
    await fill_window(controller)

    llm.summary_gate = asyncio.Event()
    await controller.send_user_turn("seventh")
    await asyncio.sleep(0)
    assert llm.summary_calls == 1

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(controller.wait_for_compaction(), timeout=0.01)

    assert not controller.is_compacting
    assert controller.compactor.status == CompactionStatus.FAILED
    assert controller.summary.value == ""

    llm.summary_gate = None
    await fill_window(controller, exchanges=2)
    await controller.send_user_turn("next round")
    result = await controller.wait_for_compaction()

    assert result.success
    assert llm.summary_calls == 2
    assert controller.summary.value == "- summary #2"


@pytest.mark.asyncio
async def test_compaction_cancelled_before_start(llm, state_store):
    """Test that a compaction task cancelled before running is not left running."""
    controller = make_controller(llm, state_store)
    await fill_window(controller)

    await controller.send_user_turn("seventh")
    task = controller._compaction_task
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert llm.summary_calls == 0
    assert not controller.is_compacting

    await fill_window(controller, exchanges=2)
    await controller.send_user_turn("next round")
    result = await controller.wait_for_compaction()

    assert result.success
    assert llm.summary_calls == 1


@pytest.mark.asyncio
async def test_compaction_failure_keeps_summary_and_loses_turns(llm, state_store):
    """Test a failed compaction: old summary stays, cleared window stays cleared."""
    controller = make_controller(llm, state_store)
    controller.summary.set("- old")
    await fill_window(controller)

    llm.summary_error = TransportError("offline")
    await controller.send_user_turn("next")
    result = await controller.wait_for_compaction()

    assert result.status == CompactionStatus.FAILED
    assert controller.summary.value == "- old"
    assert len(controller.window) == 2


@pytest.mark.asyncio
async def test_chat_failure_surfaces_error(llm, state_store):
    """Test that a 429 reaches the caller with status and body."""
    controller = make_controller(llm, state_store)
    await controller.send_user_turn("first")
    controller.summary.set("- s")
    before_summary = controller.summary.value

    llm.chat_error = ProtocolError("rate limited", status_code=429, body='{"error":"rate_limited"}')

    with pytest.raises(ProtocolError) as exc_info:
        await controller.send_user_turn("second")

    assert exc_info.value.status_code == 429
    assert exc_info.value.body == '{"error":"rate_limited"}'
    assert controller.summary.value == before_summary
    # The user turn stays, no assistant turn is added
    assert controller.window.snapshot() == (
        Turn.user("first"),
        Turn.assistant("reply 1"),
        Turn.user("second"),
    )
    assert controller.ledger.calls == 1


@pytest.mark.asyncio
async def test_usage_ledger_counts_all_calls(llm, state_store):
    """Test that chat and summary calls share the ledger."""
    controller = make_controller(llm, state_store)
    await fill_window(controller)
    await controller.send_user_turn("x")
    await controller.wait_for_compaction()

    assert controller.ledger.calls == 5
    assert controller.ledger.stats.session_total_tokens == 4 * 120 + 60


@pytest.mark.asyncio
async def test_state_restored_on_restart(llm, kv):
    """Test that a new controller picks up stored state."""
    controller = make_controller(llm, SessionStateStore(kv))
    await controller.send_user_turn("remember me")
    controller.close()

    restored = make_controller(llm, SessionStateStore(kv))

    assert restored.window.snapshot() == (Turn.user("remember me"), Turn.assistant("reply 1"))
    assert restored.ledger.total_tokens == 120
    assert restored.ledger.stats.session_total_tokens == 0


def test_restored_window_truncated_to_capacity(llm, kv):
    """Test loading more stored turns than the window holds."""
    turns = [Turn.user(f"q{i}") if i % 2 == 0 else Turn.assistant(f"a{i}") for i in range(10)]
    kv.put("chat_state_v1", serialize(SessionState(summary="- s", last_messages=turns)))

    controller = make_controller(llm, SessionStateStore(kv), window_size=6)

    assert list(controller.window.snapshot()) == turns[-6:]
    assert controller.summary.value == "- s"


def test_corrupt_state_starts_fresh(llm, kv):
    """Test that corrupt stored state does not prevent startup."""
    kv.put("chat_state_v1", '{"summary": "abc", "lastMess')

    controller = make_controller(llm, SessionStateStore(kv))

    assert len(controller.window) == 0
    assert controller.summary.value == ""


class FailingWriteKVStore(InMemoryKVStore):
    def put(self, key: str, value: str) -> None:
        raise OSError("disk full")


@pytest.mark.asyncio
async def test_persistence_failure_does_not_block(llm):
    """Test that failed writes are logged and the send proceeds."""
    controller = make_controller(llm, SessionStateStore(FailingWriteKVStore()))

    result = await controller.send_user_turn("Hello")

    assert result.reply_text == "reply 1"
    assert len(controller.window) == 2


@pytest.mark.asyncio
async def test_reset(llm, kv):
    """Test forgetting the conversation."""
    store = SessionStateStore(kv)
    controller = make_controller(llm, store)
    await controller.send_user_turn("Hello")
    controller.summary.set("- s")

    controller.reset()

    assert len(controller.window) == 0
    assert controller.summary.value == ""
    assert store.key not in kv.data
    assert controller.ledger.total_tokens == 0
    assert controller.ledger.stats.session_total_tokens == 120


@pytest.mark.asyncio
async def test_reset_during_compaction_reconciles(llm, state_store):
    """Test that a reset while compacting forces the reconciling retry."""
    controller = make_controller(llm, state_store)
    await fill_window(controller)

    llm.summary_gate = asyncio.Event()
    await controller.send_user_turn("x")
    await asyncio.sleep(0)
    controller.reset()
    llm.summary_gate.set()
    result = await controller.wait_for_compaction()

    assert result.success
    assert result.retried
    assert llm.summary_calls == 2
    assert "(empty)" in [turns for model, turns, _ in llm.requests if model == "summary-model"][1][1].text


@pytest.mark.asyncio
async def test_close_during_compaction_is_noop(llm, kv):
    """Test that a compaction finishing after close writes nothing."""
    controller = make_controller(llm, SessionStateStore(kv))
    await fill_window(controller)

    llm.summary_gate = asyncio.Event()
    await controller.send_user_turn("x")
    controller.close()
    stored = dict(kv.data)

    llm.summary_gate.set()
    result = await controller.wait_for_compaction()

    assert not result.success
    assert controller.summary.value == ""
    assert kv.data == stored


@pytest.mark.asyncio
async def test_send_after_close(llm, state_store):
    """Test that a closed session refuses new turns."""
    controller = make_controller(llm, state_store)
    controller.close()

    with pytest.raises(SessionClosedError):
        await controller.send_user_turn("Hello")


@pytest.mark.asyncio
async def test_listeners(llm, state_store):
    """Test state-change notifications."""
    controller = make_controller(llm, state_store)
    snapshots = []
    unsubscribe = controller.subscribe(snapshots.append)

    def broken(snapshot):
        raise RuntimeError("listener bug")

    controller.subscribe(broken)

    await controller.send_user_turn("Hello")

    assert len(snapshots) == 2
    assert snapshots[0].turns == (Turn.user("Hello"),)
    assert snapshots[-1].turns == (Turn.user("Hello"), Turn.assistant("reply 1"))
    assert snapshots[-1].stats.session_total_tokens == 120
    assert snapshots[-1].has_summary is False

    unsubscribe()
    await controller.send_user_turn("Again")
    assert len(snapshots) == 2


@pytest.mark.asyncio
async def test_listener_sees_compaction(llm, state_store):
    """Test that compaction progress is observable."""
    controller = make_controller(llm, state_store)
    await fill_window(controller)
    snapshots = []
    controller.subscribe(snapshots.append)

    await controller.send_user_turn("x")
    await controller.wait_for_compaction()

    assert any(s.is_compacting for s in snapshots)
    assert snapshots[-1].is_compacting is False
    assert snapshots[-1].summary_length == len("- summary #1")
    assert snapshots[-1].compactions == 1


def test_window_size_validation(llm, state_store):
    """Test that a window must hold at least one exchange."""
    with pytest.raises(ValueError):
        make_controller(llm, state_store, window_size=1)
