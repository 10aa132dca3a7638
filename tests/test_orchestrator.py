"""Tests for storyline.orchestrator — the checkpoint state machine."""

import asyncio
import logging

import pytest

from storyline.story import load_story

WIN = '{"decision": "win"}'
FAIL = "FAIL"
CONTINUE = '{"decision": "continue", "next_transition": null}'


# ---------------------------------------------------------------------------
# Activation
# ---------------------------------------------------------------------------

class TestActivation:
    def test_starts_at_first_checkpoint(self, make_orchestrator, stub_llm) -> None:
        orch = make_orchestrator(stub_llm())
        assert orch.index == 0
        assert orch.current_checkpoint.key == "gate"
        assert orch.runtime.checkpoint_statuses == ["current", "pending", "pending", "pending"]

    def test_index_is_clamped(self, make_orchestrator, stub_llm) -> None:
        orch = make_orchestrator(stub_llm())
        assert orch.activate_index(7) == 3
        assert orch.runtime.active_checkpoint_key == "tower"
        assert orch.runtime.checkpoint_statuses == ["complete", "complete", "complete", "current"]
        assert orch.activate_index(-2) == 0

    def test_activation_resets_counters(self, make_orchestrator, stub_llm) -> None:
        orch = make_orchestrator(stub_llm(), interval_turns=99)
        orch.handle_user_text("I look around")
        orch.handle_user_text("I look around again")
        orch.activate_index(1)
        rt = orch.runtime
        assert orch.turn == 0
        assert rt.turns_since_eval == 0
        assert rt.checkpoint_turn_count == 0

    def test_relative_activation(self, make_orchestrator, stub_llm) -> None:
        orch = make_orchestrator(stub_llm())
        assert orch.activate_relative(2) == 2
        assert orch.activate_relative(-1) == 1
        assert orch.activate_relative(10) == 3

    async def test_on_activate_effects(self, make_orchestrator, stub_llm, effects) -> None:
        orch = make_orchestrator(stub_llm())
        activated = []
        orch.on_activate = activated.append

        orch.activate_index(0)
        await orch.wait_idle()

        assert effects.named("apply_authors_note") == [("chat", "Rain lashes the city walls.")]
        assert effects.named("toggle_world_info") == [(["City Gate"], ["Night Market"], [])]
        assert effects.named("run_automation") == [("/bg gate",), ("/music rain",)]
        assert activated == [0]

    async def test_failing_effect_does_not_stop_activation(self, make_orchestrator, stub_llm, effects, caplog) -> None:
        def broken(*args):
            raise RuntimeError("host unavailable")

        effects.toggle_world_info = broken
        orch = make_orchestrator(stub_llm())
        with caplog.at_level(logging.WARNING):
            orch.activate_index(1)
            await orch.wait_idle()
        assert orch.index == 1
        assert "Side effect world_info failed" in caplog.text

    def test_update_checkpoint_status(self, make_orchestrator, stub_llm) -> None:
        orch = make_orchestrator(stub_llm())
        orch.update_checkpoint_status(3, "failed")
        assert orch.runtime.checkpoint_statuses[3] == "failed"
        with pytest.raises(ValueError):
            orch.update_checkpoint_status(9, "failed")
        with pytest.raises(ValueError):
            orch.update_checkpoint_status(0, "bogus")

    def test_runtime_is_a_copy(self, make_orchestrator, stub_llm) -> None:
        orch = make_orchestrator(stub_llm())
        orch.runtime.checkpoint_statuses[0] = "failed"
        assert orch.runtime.checkpoint_statuses[0] == "current"


# ---------------------------------------------------------------------------
# User turns
# ---------------------------------------------------------------------------

class TestUserTurns:
    def test_blank_text_is_ignored(self, make_orchestrator, stub_llm) -> None:
        orch = make_orchestrator(stub_llm())
        assert orch.handle_user_text("   ") is None
        assert orch.handle_user_text(None) is None
        assert orch.turn == 0

    def test_turn_tick_observer(self, make_orchestrator, stub_llm) -> None:
        orch = make_orchestrator(stub_llm(), interval_turns=99)
        ticks = []
        orch.on_turn_tick = lambda turn, since: ticks.append((turn, since))
        orch.handle_user_text("I look around")
        orch.handle_user_text("I wait")
        assert ticks == [(1, 1), (2, 2)]

    async def test_interval_evaluation(self, make_orchestrator, stub_llm) -> None:
        llm = stub_llm(CONTINUE)
        orch = make_orchestrator(llm, interval_turns=3)
        assert orch.handle_user_text("I look around") is None
        assert orch.handle_user_text("I wait in the rain") is None
        future = orch.handle_user_text("I wait some more")
        assert future is not None
        assert orch.runtime.turns_since_eval == 0

        payload = await future
        assert payload.request.reason == "interval"
        assert payload.request.turn == 3
        assert payload.outcome == "continue"
        assert orch.index == 0
        llm.assert_exhausted()

    async def test_reset_on_evaluated_policy(self, make_orchestrator, stub_llm) -> None:
        orch = make_orchestrator(stub_llm(CONTINUE), interval_turns=2, reset_since_eval_on="evaluated")
        orch.handle_user_text("I look around")
        future = orch.handle_user_text("I wait")
        assert orch.runtime.turns_since_eval == 2
        await future
        assert orch.runtime.turns_since_eval == 0

    async def test_trigger_evaluation_carries_match(self, make_orchestrator, stub_llm) -> None:
        orch = make_orchestrator(stub_llm(CONTINUE))
        payload = await orch.handle_user_text("The guard finally opens the gate.")
        assert payload.request.reason == "trigger"
        assert payload.request.matched == "win /opens? the gate/i"
        assert [c.id for c in payload.request.candidates] == ["gate-market", "gate-cells"]

    async def test_timed_edge(self, make_orchestrator, stub_llm) -> None:
        orch = make_orchestrator(stub_llm(FAIL), interval_turns=99)
        orch.activate_index(1)
        for _ in range(4):
            assert orch.handle_user_text("I browse the stalls") is None
        payload = await orch.handle_user_text("I browse the stalls")
        await orch.wait_idle()
        assert payload.request.reason == "timed"
        assert payload.request.matched == "market-cells after 5 turns"
        assert orch.current_checkpoint.key == "cells"

    async def test_manual_evaluation_uses_latest_user_text(self, make_orchestrator, stub_llm) -> None:
        orch = make_orchestrator(stub_llm(CONTINUE))
        orch.record_message("Player", "I hide behind the cart", is_user=True)
        orch.record_message("Narrator", "The guard walks past.")
        payload = await orch.evaluate_now()
        assert payload.request.reason == "manual"
        assert payload.request.latest_text == "I hide behind the cart"


# ---------------------------------------------------------------------------
# Verdicts
# ---------------------------------------------------------------------------

class TestVerdicts:
    async def test_win_follows_sole_edge(self, make_orchestrator, stub_llm) -> None:
        orch = make_orchestrator(stub_llm(WIN))
        events = []
        orch.on_evaluated = events.append
        await orch.handle_user_text("The guard opens the gate.")
        await orch.wait_idle()
        assert orch.current_checkpoint.key == "market"
        assert orch.runtime.checkpoint_statuses == ["complete", "current", "pending", "pending"]
        assert events[-1].transition.id == "gate-market"
        assert not events[-1].stale

    async def test_fail_marks_checkpoint_failed(self, make_orchestrator, stub_llm) -> None:
        orch = make_orchestrator(stub_llm(FAIL))
        payload = await orch.handle_user_text("I was arrested at the gate")
        await orch.wait_idle()
        assert payload.request.matched == "fail /arrested/i"
        assert orch.current_checkpoint.key == "cells"
        assert orch.runtime.checkpoint_statuses == ["failed", "complete", "current", "pending"]

    async def test_fail_without_edge_stays(self, make_orchestrator, stub_llm) -> None:
        orch = make_orchestrator(stub_llm(FAIL))
        orch.activate_index(3)
        await orch.evaluate_now()
        assert orch.index == 3
        assert orch.runtime.checkpoint_statuses[3] == "failed"

    async def test_suggested_transition(self, make_orchestrator, stub_llm, story_data) -> None:
        story_data["transitions"].append({"id": "gate-tower", "from": "gate", "to": "tower"})
        story = load_story(story_data)
        orch = make_orchestrator(stub_llm('{"decision": "win", "next_transition": "gate-tower"}'),
                                 story_override=story)
        await orch.handle_user_text("He opens the gate")
        await orch.wait_idle()
        assert orch.current_checkpoint.key == "tower"

    async def test_ambiguous_transition_takes_first_defined(self, make_orchestrator, stub_llm, story_data) -> None:
        story_data["transitions"].append({"id": "gate-tower", "from": "gate", "to": "tower"})
        orch = make_orchestrator(stub_llm(WIN), story_override=load_story(story_data))
        await orch.handle_user_text("He opens the gate")
        await orch.wait_idle()
        assert orch.current_checkpoint.key == "market"

    async def test_decisive_verdict_drops_queued_work(self, make_orchestrator, stub_llm) -> None:
        llm = stub_llm(WIN)
        llm.gate = asyncio.Event()
        orch = make_orchestrator(llm)
        first = orch.handle_user_text("He opens the gate")
        second = orch.handle_user_text("She opens the gate too")
        await asyncio.sleep(0)
        assert llm.in_flight == 1

        llm.gate.set()
        await first
        await orch.wait_idle()
        assert second.cancelled()
        assert orch.index == 1
        assert len(llm.calls) == 1
        assert llm.max_in_flight == 1

    async def test_stale_verdict_is_ignored(self, make_orchestrator, stub_llm) -> None:
        llm = stub_llm(WIN)
        llm.gate = asyncio.Event()
        orch = make_orchestrator(llm)
        events = []
        orch.on_evaluated = events.append

        future = orch.handle_user_text("The guard opens the gate")
        await asyncio.sleep(0)
        orch.activate_index(2)
        llm.gate.set()
        payload = await future
        await orch.wait_idle()

        assert payload.outcome == "win"
        assert orch.index == 2
        assert events[-1].stale

    async def test_stale_verdict_keeps_newer_request(self, make_orchestrator, stub_llm) -> None:
        llm = stub_llm(WIN, CONTINUE)
        llm.gate = asyncio.Event()
        orch = make_orchestrator(llm)
        events = []
        orch.on_evaluated = events.append

        stale = orch.handle_user_text("The guard opens the gate")
        await asyncio.sleep(0)
        orch.activate_index(2)
        fresh = orch.evaluate_now()
        llm.gate.set()
        await stale
        payload = await fresh
        await orch.wait_idle()

        assert not fresh.cancelled()
        assert payload.request.checkpoint_key == "cells"
        assert len(llm.calls) == 2
        assert [e.stale for e in events] == [True, False]
        assert orch.index == 2
        llm.assert_exhausted()

    async def test_arbiter_preset_applied_before_call(self, make_orchestrator, stub_llm, preset_sink) -> None:
        orch = make_orchestrator(stub_llm(CONTINUE))
        await orch.handle_user_text("He opens the gate")
        name, values, label = preset_sink.applied[-1]
        assert "[$arbiter]" in label
        assert values["temperature"] == 0.0

    async def test_observer_failure_is_logged(self, make_orchestrator, stub_llm, caplog) -> None:
        orch = make_orchestrator(stub_llm(WIN))

        def broken(event):
            raise RuntimeError("ui gone")

        orch.on_evaluated = broken
        with caplog.at_level(logging.WARNING, logger="storyline.orchestrator"):
            await orch.handle_user_text("He opens the gate")
            await orch.wait_idle()
        assert orch.index == 1
        assert "story observer" in caplog.text

    async def test_reset_story_clears_failures(self, make_orchestrator, stub_llm) -> None:
        orch = make_orchestrator(stub_llm(FAIL))
        await orch.handle_user_text("arrested!")
        await orch.wait_idle()
        assert orch.reset_story() == 0
        assert orch.runtime.checkpoint_statuses == ["current", "pending", "pending", "pending"]


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------

class TestRoles:
    def test_role_switch_applies_note_and_preset(self, make_orchestrator, stub_llm, effects, preset_sink) -> None:
        orch = make_orchestrator(stub_llm())
        assert orch.set_active_role("Mira") == "companion"
        assert effects.named("apply_authors_note") == [("companion", "Mira distrusts guards.")]
        name, values, label = preset_sink.applied[-1]
        assert name == "Story:The Broken Compass"
        assert values["temperature"] == 0.8
        assert values["top_p"] == 0.95
        assert label == "Story:The Broken Compass [companion] · The City Gate"

    def test_same_role_not_reapplied_until_new_generation(self, make_orchestrator, stub_llm, preset_sink) -> None:
        orch = make_orchestrator(stub_llm())
        orch.set_active_role("Mira")
        orch.set_active_role("mira")
        assert len(preset_sink.applied) == 1
        orch.new_generation()
        orch.set_active_role("Mira")
        assert len(preset_sink.applied) == 2

    def test_role_without_note_clears_it(self, make_orchestrator, stub_llm, effects) -> None:
        orch = make_orchestrator(stub_llm())
        assert orch.set_active_role("Narrator") == "dm"
        assert effects.named("clear_authors_note") == [()]

    def test_unknown_speaker(self, make_orchestrator, stub_llm) -> None:
        orch = make_orchestrator(stub_llm())
        orch.set_active_role("Mira")
        assert orch.set_active_role("A Stranger") is None
        assert orch.active_role == "companion"

    def test_activation_reapplies_active_role(self, make_orchestrator, stub_llm, preset_sink) -> None:
        orch = make_orchestrator(stub_llm())
        orch.set_active_role("Mira")
        orch.activate_index(1)
        _, values, label = preset_sink.applied[-1]
        assert label.endswith("· The Night Market")
        assert values["top_p"] == 0.9

    async def test_role_preset_restored_after_arbiter_call(self, make_orchestrator, stub_llm, preset_sink) -> None:
        orch = make_orchestrator(stub_llm(CONTINUE))
        orch.set_active_role("Mira")
        await orch.handle_user_text("He opens the gate")
        await orch.wait_idle()
        labels = [label for _, _, label in preset_sink.applied]
        assert labels == [
            "Story:The Broken Compass [companion] · The City Gate",
            "Story:The Broken Compass [$arbiter] · The City Gate",
            "Story:The Broken Compass [companion] · The City Gate",
        ]
        assert preset_sink.applied[-1][1]["top_p"] == 0.95


# ---------------------------------------------------------------------------
# Chat sessions and persistence
# ---------------------------------------------------------------------------

class TestChatSessions:
    def test_progress_survives_new_orchestrator(self, make_orchestrator, stub_llm, store) -> None:
        orch = make_orchestrator(stub_llm())
        assert orch.handle_chat_changed("chat-1", True) == "default"
        orch.activate_index(2)
        assert store.load("chat-1")["active_checkpoint_key"] == "cells"

        other = make_orchestrator(stub_llm())
        assert other.handle_chat_changed("chat-1", True) == "stored"
        assert other.index == 2

    def test_same_chat_is_a_no_op(self, make_orchestrator, stub_llm) -> None:
        orch = make_orchestrator(stub_llm())
        orch.handle_chat_changed("chat-1", True)
        assert orch.handle_chat_changed("chat-1", True) is None
        assert orch.handle_chat_changed("chat-1", True, force=True) == "default"

    def test_rehydration_restores_turn_and_skips_automations(self, make_orchestrator, stub_llm, store, effects) -> None:
        orch = make_orchestrator(stub_llm(), interval_turns=99)
        orch.handle_chat_changed("chat-1", True)
        orch.handle_user_text("I look around")
        orch.handle_user_text("I wait")

        effects.calls.clear()
        other = make_orchestrator(stub_llm(), interval_turns=99)
        other.handle_chat_changed("chat-1", True)
        assert other.turn == 2
        assert other.runtime.checkpoint_turn_count == 2
        assert effects.named("apply_authors_note") == [("chat", "Rain lashes the city walls.")]
        assert effects.named("run_automation") == []

    def test_group_requirement_blocks_writes(self, make_orchestrator, stub_llm, store) -> None:
        orch = make_orchestrator(stub_llm())
        orch.handle_chat_changed("chat-1", False)
        orch.activate_index(1)
        assert store.load("chat-1") is None

    def test_group_requirement_can_be_disabled(self, make_orchestrator, stub_llm, store) -> None:
        orch = make_orchestrator(stub_llm(), require_group_chat=False)
        orch.handle_chat_changed("chat-1", False)
        orch.activate_index(1)
        assert store.load("chat-1")["checkpoint_index"] == 1

    def test_switching_chat_clears_history(self, make_orchestrator, stub_llm) -> None:
        orch = make_orchestrator(stub_llm())
        orch.handle_chat_changed("chat-1", True)
        orch.record_message("Player", "hello", is_user=True)
        orch.handle_chat_changed("chat-2", True)
        assert orch.history == []

    async def test_chat_switch_makes_in_flight_verdict_stale(self, make_orchestrator, stub_llm) -> None:
        llm = stub_llm(WIN)
        llm.gate = asyncio.Event()
        orch = make_orchestrator(llm)
        orch.handle_chat_changed("chat-1", True)
        future = orch.handle_user_text("He opens the gate")
        await asyncio.sleep(0)
        orch.handle_chat_changed("chat-2", True)
        llm.gate.set()
        await future
        await orch.wait_idle()
        assert orch.index == 0


class TestDispose:
    def test_disposed_orchestrator_ignores_input(self, make_orchestrator, stub_llm) -> None:
        orch = make_orchestrator(stub_llm())
        orch.dispose()
        assert orch.disposed
        assert orch.handle_user_text("He opens the gate") is None
        assert orch.evaluate_now() is None
        assert orch.handle_chat_changed("chat-1", True) is None
