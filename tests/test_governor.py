"""tests/test_governor.py

Tests for the Governor engine: the pre-call pipeline, the post-call pipeline
and telemetry.
"""

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT / "src"))

from cyber_governor import (
    CorrectionStrategy,
    DecisionAction,
    Governor,
    GovernorConfig,
    InMemorySessionStore,
    InMemoryTelemetry,
    InvalidValue,
    Telemetry,
)
from cyber_governor.history import FileSessionStore

NOW = 1_700_000_000_000
SESSION = "session-1"


class FixedRandom:
    def random(self):
        return 0.0


# ─────────────────────────────────────
# Fixtures
# ─────────────────────────────────────

@pytest.fixture
def config(tmp_path):
    return GovernorConfig(state_dir=tmp_path)


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def telemetry():
    return InMemoryTelemetry()


@pytest.fixture
def governor(config, store, telemetry):
    return Governor(
        config=config,
        store=store,
        telemetry=Telemetry(sink=telemetry),
        clock=lambda: NOW,
        rng=FixedRandom(),
    )


# ─────────────────────────────────────
# Pre-call pipeline
# ─────────────────────────────────────

class TestPreToolUse:
    def test_valid_call_allowed_and_recorded(self, governor, store):
        outcome = governor.pre_tool_use("Read", {"file_path": "/src/a.py"}, SESSION)
        assert outcome.decision.action == DecisionAction.ALLOW
        assert outcome.decision.system_message is None
        history = store.load(SESSION)
        assert len(history) == 1
        assert history[0].tool == "Read"
        assert history[0].timestamp == NOW
        assert history[0].failed is False

    def test_forbidden_beats_missing(self, governor):
        outcome = governor.pre_tool_use("Write", {"file_path": "/app/.env"}, SESSION)
        assert outcome.error_vector.missing_fields == ["content"]
        assert outcome.decision.action == DecisionAction.DENY
        assert outcome.decision.reason.startswith("Forbidden action detected")

    def test_unknown_tool(self, governor):
        outcome = governor.pre_tool_use("DeleteEverything", {}, SESSION)
        assert outcome.error_vector.forbidden_actions == [
            "Unknown tool: DeleteEverything",
            "Tool not in allowed list: DeleteEverything",
        ]
        assert outcome.decision.blocks

    def test_short_mcp_name_is_hallucinated(self, governor):
        outcome = governor.pre_tool_use("mcp__github", {}, SESSION)
        assert outcome.error_vector.forbidden_actions == ["Unknown tool: mcp__github"]

    def test_mcp_tool_allowed(self, governor):
        outcome = governor.pre_tool_use("mcp__github__create_issue", {"title": "x"}, SESSION)
        assert outcome.decision.action == DecisionAction.ALLOW

    def test_non_string_tool_name_denied(self, governor):
        outcome = governor.pre_tool_use(42, {}, SESSION)
        assert outcome.decision.action == DecisionAction.DENY

    def test_missing_input_treated_as_empty(self, governor):
        outcome = governor.pre_tool_use("Bash", None, SESSION)
        assert outcome.error_vector.invalid_values == []
        assert outcome.error_vector.missing_fields == ["command"]

    def test_malformed_input(self, governor):
        outcome = governor.pre_tool_use("Read", ["a.py"], SESSION)
        assert outcome.error_vector.invalid_values[0] == InvalidValue(
            field="tool_input", reason="Input is an array, expected object"
        )
        assert outcome.decision.reason == "Missing required fields: file_path"

    def test_dangerous_command_denied(self, governor):
        outcome = governor.pre_tool_use("Bash", {"command": "rm -rf /"}, SESSION)
        assert outcome.decision.action == DecisionAction.DENY
        assert outcome.error_vector.forbidden_actions == ["Dangerous command pattern detected"]

    def test_oscillation_escalates(self, governor):
        calls = [
            ("Read", {"file_path": "a.py"}),
            ("Bash", {"command": "make"}),
            ("Read", {"file_path": "a.py"}),
            ("Bash", {"command": "make"}),
        ]
        for tool, tool_input in calls:
            assert governor.pre_tool_use(tool, tool_input, SESSION).decision.action == DecisionAction.ALLOW

        outcome = governor.pre_tool_use("Read", {"file_path": "a.py"}, SESSION)
        assert outcome.decision.action == DecisionAction.ESCALATE
        assert outcome.error_vector.loop_detected
        assert outcome.decision.reason == "Oscillation: Read <-> Bash"

    def test_breaking_oscillation_allowed_with_note(self, governor):
        for tool, tool_input in [
            ("Read", {"file_path": "a.py"}),
            ("Bash", {"command": "make"}),
            ("Read", {"file_path": "a.py"}),
            ("Bash", {"command": "make"}),
        ]:
            governor.pre_tool_use(tool, tool_input, SESSION)

        outcome = governor.pre_tool_use("Grep", {"pattern": "TODO"}, SESSION)
        assert outcome.decision.action == DecisionAction.ALLOW
        assert "Pattern detected but current action allowed." in outcome.decision.system_message

    def test_repeated_call_escalates_on_sixth(self, governor, store):
        for _ in range(5):
            outcome = governor.pre_tool_use("Read", {"file_path": "a.py"}, SESSION)
            assert outcome.decision.action == DecisionAction.ALLOW
        outcome = governor.pre_tool_use("Read", {"file_path": "a.py"}, SESSION)
        assert outcome.decision.action == DecisionAction.ESCALATE
        assert outcome.loop_info.similar_calls_count == 5
        # Blocked calls are still recorded.
        assert len(store.load(SESSION)) == 6

    def test_sessions_are_isolated(self, governor):
        for _ in range(5):
            governor.pre_tool_use("Read", {"file_path": "a.py"}, "one")
        outcome = governor.pre_tool_use("Read", {"file_path": "a.py"}, "two")
        assert outcome.decision.action == DecisionAction.ALLOW

    def test_no_session_id(self, governor):
        outcome = governor.pre_tool_use("Read", {"file_path": "a.py"}, None)
        assert outcome.decision.action == DecisionAction.ALLOW

    def test_plan_source_contradiction(self, config, store):
        governor = Governor(
            config=config,
            store=store,
            plan_source=lambda tool, tool_input, session: "First I will only read the files",
            clock=lambda: NOW,
        )
        outcome = governor.pre_tool_use("Write", {"file_path": "a.py", "content": "x"}, SESSION)
        assert outcome.decision.action == DecisionAction.DENY
        assert outcome.error_vector.contradiction == (
            'Plan indicates read-only operation ("only read") but attempting Write'
        )

    def test_correction_strategy(self, config, store):
        class FixPaths(CorrectionStrategy):
            def can_correct(self, invalid):
                return invalid.field == "file_path"

            def suggest(self, invalid):
                return "/src/fixed.py"

        governor = Governor(config=config, store=store, correction_strategy=FixPaths(), clock=lambda: NOW)
        outcome = governor.pre_tool_use("Read", {"file_path": 7, "limit": 5}, SESSION)
        assert outcome.decision.action == DecisionAction.CORRECT
        assert outcome.updated_input == {"file_path": "/src/fixed.py", "limit": 5}

    def test_uses_file_store_by_default(self, config):
        governor = Governor(config=config, clock=lambda: NOW)
        governor.pre_tool_use("Read", {"file_path": "a.py"}, SESSION)
        assert (config.state_dir / f"history-{SESSION}.json").exists()


# ─────────────────────────────────────
# Post-call pipeline
# ─────────────────────────────────────

class TestPostToolUse:
    def run_failing_bash(self, governor):
        governor.pre_tool_use("Bash", {"command": "make"}, SESSION)
        return governor.post_tool_use(
            "Bash", {"command": "make"}, SESSION, tool_result="Error: build failed"
        )

    def test_success_says_nothing(self, governor, store):
        governor.pre_tool_use("Read", {"file_path": "a.py"}, SESSION)
        outcome = governor.post_tool_use("Read", {"file_path": "a.py"}, SESSION, tool_result="contents")
        assert not outcome.failure.failed
        assert outcome.system_message is None
        assert not store.load(SESSION)[0].failed

    def test_first_failure_gives_feedback(self, governor, store):
        outcome = self.run_failing_bash(governor)
        assert outcome.failure.failed
        assert not outcome.damping_applied
        assert outcome.system_message.startswith("[CYBER-GOVERNOR] Tool execution feedback.")
        assert "ISSUE: Error pattern detected in output" in outcome.system_message
        assert "WARNING" not in outcome.system_message
        assert store.load(SESSION)[0].failure_reason == "Error pattern detected in output"

    def test_second_failure_warns(self, governor):
        self.run_failing_bash(governor)
        outcome = self.run_failing_bash(governor)
        assert "WARNING: Bash has failed 2 times recently." in outcome.system_message
        assert "3. Trying an alternative approach" in outcome.system_message

    def test_third_failure_applies_damping(self, governor, telemetry):
        for _ in range(2):
            self.run_failing_bash(governor)
        outcome = self.run_failing_bash(governor)

        assert outcome.damping_applied
        assert outcome.loop_info.consecutive_failures == 3
        assert outcome.backoff_ms == 4000
        lines = outcome.system_message.splitlines()
        assert lines[0] == "[CYBER-GOVERNOR] Damping applied due to repeated issues."
        assert "Pattern: Consecutive failures: Bash (3 times)" in lines
        assert "Recommended backoff: 4000 ms" in lines
        assert "  - Recent calls: 3" in lines
        assert "  - Total this session: 3" in lines
        assert len(telemetry.find("damping_applied")) == 1

    def test_next_call_after_damping_escalates(self, governor):
        for _ in range(3):
            self.run_failing_bash(governor)
        outcome = governor.pre_tool_use("Bash", {"command": "make"}, SESSION)
        assert outcome.decision.action == DecisionAction.ESCALATE

    def test_failure_event_with_message(self, governor):
        governor.pre_tool_use("Bash", {"command": "make"}, SESSION)
        outcome = governor.post_tool_use(
            "Bash", {"command": "make"}, SESSION,
            hook_event="PostToolUseFailure",
            payload={"error": {"message": "process killed"}},
        )
        assert outcome.failure.failed
        assert outcome.failure.reason == "process killed"

    @pytest.mark.parametrize("error,reason", [
        ("timed out", "timed out"),
        (None, "Tool execution failed"),
        ({"code": 1}, "Tool execution failed"),
    ])
    def test_failure_event_reasons(self, governor, error, reason):
        outcome = governor.post_tool_use(
            "Bash", {}, SESSION, hook_event="PostToolUseFailure", payload={"error": error}
        )
        assert outcome.failure.reason == reason

    def test_malformed_tool_name_does_not_break_later_feedback(self, governor, store):
        denied = governor.pre_tool_use(["Read"], {"file_path": "a.py"}, SESSION)
        assert denied.decision.action == DecisionAction.DENY

        outcome = self.run_failing_bash(governor)
        assert outcome.failure.failed
        assert "ISSUE: Error pattern detected in output" in outcome.system_message
        assert outcome.stats.tool_counts == {'["Read"]': 1, "Bash": 1}
        assert [h.tool for h in store.load(SESSION)] == ['["Read"]', "Bash"]

    def test_malformed_tool_name_failures_are_tracked(self, governor):
        for _ in range(3):
            governor.pre_tool_use({"name": "Bash"}, {}, SESSION)
            outcome = governor.post_tool_use({"name": "Bash"}, {}, SESSION, tool_result="Error: nope")
        assert outcome.damping_applied
        assert outcome.loop_info.consecutive_failures == 3

    def test_damping_without_failures_uses_base_backoff(self, governor):
        for _ in range(5):
            governor.pre_tool_use("Read", {"file_path": "a.py"}, SESSION)
        outcome = governor.post_tool_use("Read", {"file_path": "a.py"}, SESSION, tool_result="ok")
        assert outcome.damping_applied
        assert outcome.backoff_ms == 1000
        assert "Consecutive failures: 0" in outcome.system_message


# ─────────────────────────────────────
# Telemetry and storage faults
# ─────────────────────────────────────

class TestTelemetry:
    def test_pre_decision_event(self, governor, telemetry):
        governor.pre_tool_use("Bash", {"command": "rm -rf /"}, SESSION)
        events = telemetry.find("pre_tool_decision")
        assert len(events) == 1
        assert events[0]["action"] == "deny"
        assert events[0]["forbidden"] == 1
        assert "command" not in events[0]

    def test_failure_event(self, governor, telemetry):
        governor.post_tool_use("Bash", {}, SESSION, tool_result="Permission denied")
        assert telemetry.find("tool_failure_recorded")[0]["tool"] == "Bash"

    def test_history_write_failure_is_reported_not_raised(self, tmp_path, telemetry):
        blocker = tmp_path / "blocker"
        blocker.write_text("x", encoding="utf-8")
        governor = Governor(
            config=GovernorConfig(state_dir=blocker / "state"),
            store=FileSessionStore(blocker / "state"),
            telemetry=Telemetry(sink=telemetry),
        )
        outcome = governor.pre_tool_use("Read", {"file_path": "a.py"}, SESSION)
        assert outcome.decision.action == DecisionAction.ALLOW
        assert len(telemetry.find("history_write_failed")) == 1

    def test_broken_sink_does_not_change_decision(self, config, store):
        class BrokenSink:
            def emit(self, event):
                raise RuntimeError("sink down")

        governor = Governor(config=config, store=store, telemetry=Telemetry(sink=BrokenSink()))
        outcome = governor.pre_tool_use("Read", {"file_path": "a.py"}, SESSION)
        assert outcome.decision.action == DecisionAction.ALLOW
