"""
Tests for the agent process supervisor.

Fake agents are small executable Python scripts standing in for the claude
binary, so spawning, stream pumping and termination run for real.
"""

import asyncio
import json
import signal
from unittest.mock import AsyncMock, MagicMock

import pytest

from round_relay.cli_bridge import (
	AgentProcess,
	CapturedRun,
	CLICancelledError,
	CLIStartupError,
	ClaudeCodeRelay,
	LineBuffer,
	build_claude_args,
)
from round_relay.decisions import HandoffFiles, QuestionStore
from round_relay.events import EventKind, classify_record

SESSION_INIT = json.dumps({"type": "system", "subtype": "init", "model": "claude-test"})
DECISION_TEXT = json.dumps({
	"type": "assistant",
	"message": {"content": [{"type": "text", "text": "[DECISION NEEDED] Pick a color\n[OPTIONS] Red | Blue | Green"}]},
})
FINAL = json.dumps({"type": "result", "result": "Finished the task", "total_cost_usd": 0.02, "num_turns": 2})


def fake_relay():
	relay = MagicMock()
	relay.add_line = AsyncMock()
	relay.finalize = AsyncMock()
	relay.bot = MagicMock()
	relay.bot.send_message = AsyncMock()
	relay.chat_id = 1
	return relay


def relayed(relay) -> list[str]:
	return [c.args[0] for c in relay.add_line.call_args_list]


class RecordingProcess(AgentProcess):
	"""Supervisor that only records the lines it is handed."""

	def __init__(self, config):
		super().__init__(config=config, mode="test")
		self.lines: list[tuple[str, bool]] = []

	async def handle_line(self, line, is_error):
		self.lines.append((line, is_error))

	async def run(self, prompt="", timeout=10.0):
		return await self._spawn_and_wait(prompt, timeout)


class TestLineBuffer:
	"""Reassembly of lines split across chunks."""

	def test_partial_line_held(self):
		buffer = LineBuffer()
		assert buffer.feed('{"type": "assis') == []
		assert buffer.pending == '{"type": "assis'
		assert buffer.feed('tant"}\nnext') == ['{"type": "assistant"}']
		assert buffer.pending == "next"

	def test_byte_at_a_time(self):
		"""Feeding one character at a time yields each line exactly once."""
		text = f"{SESSION_INIT}\n{FINAL}\n"
		buffer = LineBuffer()
		lines = []
		for ch in text:
			lines.extend(buffer.feed(ch))
		assert lines == [SESSION_INIT, FINAL]
		assert buffer.drain() == ""

	def test_drain_returns_remainder(self):
		buffer = LineBuffer()
		buffer.feed("no newline")
		assert buffer.drain() == "no newline"
		assert buffer.pending == ""


class TestBuildArgs:
	def test_stream_json_print_mode(self):
		args = build_claude_args(max_turns=25)
		assert args[:4] == ["-p", "--verbose", "--output-format", "stream-json"]
		assert args[args.index("--max-turns") + 1] == "25"
		assert "--append-system-prompt" in args

	def test_no_turn_limit(self):
		assert "--max-turns" not in build_claude_args()


class TestAgentProcess:
	"""Spawning, pumping and termination with real subprocesses."""

	@pytest.mark.asyncio
	async def test_chunked_stdout_reassembled(self, config, make_script):
		"""A line split mid-way across writes is delivered once, whole."""
		config.claude_bin = str(make_script("agent.py", f"""
			import sys, time
			sys.stdin.read()
			line = {SESSION_INIT!r} + "\\n"
			for i in range(0, len(line), 7):
				sys.stdout.write(line[i:i + 7])
				sys.stdout.flush()
				time.sleep(0.005)
			sys.stdout.write({FINAL!r})
			sys.stdout.flush()
		"""))
		proc = RecordingProcess(config)

		code = await proc.run("hello")

		assert code == 0
		assert proc.lines == [(SESSION_INIT, False), (FINAL, False)]

	@pytest.mark.asyncio
	async def test_prompt_written_to_stdin(self, config, make_script, tmp_path):
		out = tmp_path / "prompt.txt"
		config.claude_bin = str(make_script("agent.py", f"""
			import sys
			open({str(out)!r}, "w").write(sys.stdin.read())
		"""))
		await RecordingProcess(config).run("the full prompt ✓")
		assert out.read_text() == "the full prompt ✓"

	@pytest.mark.asyncio
	async def test_stderr_flagged(self, config, make_script):
		config.claude_bin = str(make_script("agent.py", """
			import sys
			sys.stdin.read()
			sys.stderr.write("warning: something\\n")
		"""))
		proc = RecordingProcess(config)
		await proc.run()
		assert proc.lines == [("warning: something", True)]

	@pytest.mark.asyncio
	async def test_multibyte_split_across_chunks(self, config, make_script):
		config.claude_bin = str(make_script("agent.py", """
			import sys, time
			sys.stdin.read()
			data = "한글 출력\\n".encode()
			sys.stdout.buffer.write(data[:4])
			sys.stdout.flush()
			time.sleep(0.02)
			sys.stdout.buffer.write(data[4:])
			sys.stdout.flush()
		"""))
		proc = RecordingProcess(config)
		await proc.run()
		assert proc.lines == [("한글 출력", False)]

	@pytest.mark.asyncio
	async def test_audit_log_written(self, config, make_script):
		config.claude_bin = str(make_script("agent.py", """
			import sys
			sys.stdin.read()
			print("hello audit")
		"""))
		proc = RecordingProcess(config)
		await proc.run("audit me")
		log = proc.audit.path.read_text()
		assert "Prompt: audit me" in log
		assert "[STDOUT] hello audit" in log
		assert "Session ended with exit code: 0" in log

	@pytest.mark.asyncio
	async def test_kill_is_idempotent(self, config, make_script):
		config.claude_bin = str(make_script("agent.py", """
			import sys, time
			sys.stdin.read()
			print("started", flush=True)
			time.sleep(30)
		"""))
		proc = RecordingProcess(config)
		task = asyncio.create_task(proc.run())
		while not proc.lines:
			await asyncio.sleep(0.01)

		assert proc.is_running
		assert proc.kill() is True
		assert proc.kill() is False

		code = await asyncio.wait_for(task, timeout=10)
		assert code == -signal.SIGTERM
		assert not proc.is_running

	@pytest.mark.asyncio
	async def test_kill_before_start(self, config, make_script, tmp_path):
		"""A run killed before it starts never spawns the agent."""
		marker = tmp_path / "spawned"
		config.claude_bin = str(make_script("agent.py", f"""
			open({str(marker)!r}, "w").write("yes")
		"""))
		proc = RecordingProcess(config)
		assert proc.kill() is False

		with pytest.raises(CLICancelledError):
			await proc.run()
		assert proc.process is None
		assert not marker.exists()

	@pytest.mark.asyncio
	async def test_task_cancel_terminates_agent(self, config, make_script):
		"""Cancelling the task running the supervisor takes the agent down with it."""
		config.claude_bin = str(make_script("agent.py", """
			import sys, time
			sys.stdin.read()
			print("started", flush=True)
			time.sleep(30)
		"""))
		proc = RecordingProcess(config)
		task = asyncio.create_task(proc.run(timeout=60))
		while not proc.lines:
			await asyncio.sleep(0.01)

		task.cancel()
		with pytest.raises(asyncio.CancelledError):
			await asyncio.wait_for(task, timeout=10)

		assert proc.process.returncode == -signal.SIGTERM
		assert not proc.is_running
		assert "Cancelled" in proc.audit.path.read_text()

	@pytest.mark.asyncio
	async def test_timeout_terminates(self, config, make_script):
		config.claude_bin = str(make_script("agent.py", """
			import sys, time
			sys.stdin.read()
			time.sleep(30)
		"""))
		proc = RecordingProcess(config)
		code = await asyncio.wait_for(proc.run(timeout=0.3), timeout=10)
		assert code == -signal.SIGTERM

	@pytest.mark.asyncio
	async def test_spawn_error(self, config, tmp_path):
		config.claude_bin = str(tmp_path / "missing-binary")
		with pytest.raises(CLIStartupError):
			await RecordingProcess(config).run()


class TestClaudeCodeRelay:
	"""Event rendering, attribution and decision detection."""

	def make_relay(self, config, **kwargs):
		relay = fake_relay()
		questions = QuestionStore()
		bridge = ClaudeCodeRelay(relay, questions, config=config, **kwargs)
		return bridge, relay, questions

	@pytest.mark.asyncio
	async def test_full_run(self, config, make_script):
		config.claude_bin = str(make_script("agent.py", f"""
			import sys
			sys.stdin.read()
			for line in ({SESSION_INIT!r}, {DECISION_TEXT!r}, {FINAL!r}):
				print(line, flush=True)
		"""))
		handoff = HandoffFiles(config.decisions_dir)
		on_decision = AsyncMock()
		bridge, relay, questions = self.make_relay(config, handoff=handoff, on_decision=on_decision)

		code = await bridge.run("do the thing", mode="autopilot", max_turns=5)

		assert code == 0
		lines = relayed(relay)
		assert "⚙️ Session started (claude-test)" in lines
		assert any("Finished the task" in line for line in lines)
		relay.finalize.assert_awaited_once_with("✅ Done (exit: 0)")

		pending = questions.get_pending_questions()
		assert len(pending) == 1
		assert pending[0].question == "Pick a color"
		assert pending[0].options == ["Red", "Blue", "Green"]
		on_decision.assert_awaited_once_with(pending[0])
		assert handoff.question_file.exists()

		assert bridge.final_event.kind == EventKind.FINAL_RESULT
		assert bridge.final_event.cost == 0.02

	@pytest.mark.asyncio
	async def test_spawn_error_reported(self, config, tmp_path):
		config.claude_bin = str(tmp_path / "missing-binary")
		bridge, relay, _ = self.make_relay(config)
		with pytest.raises(CLIStartupError):
			await bridge.run("x")
		assert relayed(relay)[-1].startswith("❌ Error:")
		relay.finalize.assert_not_awaited()

	@pytest.mark.asyncio
	async def test_delegate_result_attributed(self, config):
		bridge, relay, _ = self.make_relay(config)
		await bridge.handle_line(json.dumps({
			"type": "assistant",
			"message": {"content": [{"type": "tool_use", "name": "Bash", "input": {"command": "round-relay ask gemini 'v15?'"}}]},
		}), False)
		assert bridge.awaiting_result is not None

		await bridge.handle_line(json.dumps({"type": "user", "tool_use_result": {"stdout": "Use v15.1"}}), False)

		assert relayed(relay)[-1] == "🔮 *Researcher*: Use v15.1"
		assert bridge.awaiting_result is None

	@pytest.mark.asyncio
	async def test_unattributed_result_dropped(self, config):
		bridge, relay, _ = self.make_relay(config)
		await bridge.handle_line(json.dumps({"type": "user", "tool_use_result": {"stdout": "file contents"}}), False)
		relay.add_line.assert_not_awaited()

	@pytest.mark.asyncio
	async def test_non_delegate_call_clears_slot(self, config):
		"""The attribution register holds only the most recent tool call."""
		bridge, relay, _ = self.make_relay(config)
		await bridge.handle_line(json.dumps({
			"type": "assistant",
			"message": {"content": [
				{"type": "tool_use", "name": "Bash", "input": {"command": "round-relay ask gpt plan"}},
				{"type": "tool_use", "name": "Read", "input": {"file_path": "/x"}},
			]},
		}), False)
		assert bridge.awaiting_result is None

	@pytest.mark.asyncio
	async def test_long_final_result_sent_separately(self, config):
		bridge, relay, _ = self.make_relay(config)
		text = "result line\n" * 100
		await bridge.handle_line(json.dumps({"type": "result", "result": text, "total_cost_usd": 0.1, "num_turns": 9}), False)
		relay.bot.send_message.assert_awaited()
		assert relayed(relay) == ["✅ *Leader finished*: 9 turns ($0.100)"]

	@pytest.mark.asyncio
	async def test_raw_decision_line_detected(self, config):
		"""Non-JSON output still goes through decision detection."""
		bridge, relay, questions = self.make_relay(config)
		await bridge.handle_line("[DECISION NEEDED] Deploy now? [OPTIONS] Yes | No", False)
		assert questions.latest_pending().options == ["Yes", "No"]
		assert relayed(relay)[-1].startswith("🤔")

	@pytest.mark.asyncio
	async def test_decision_callback_failure_isolated(self, config):
		bridge, _, questions = self.make_relay(config, on_decision=AsyncMock(side_effect=RuntimeError("boom")))
		await bridge.handle_line("[DECISION NEEDED] Go? [OPTIONS] Yes | No", False)
		assert len(questions) == 1


class TestCapturedRun:
	@pytest.mark.asyncio
	async def test_captures_text_and_cost(self, config, make_script):
		text = json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "Draft plan: step 1"}]}})
		config.claude_bin = str(make_script("agent.py", f"""
			import sys
			sys.stdin.read()
			print({text!r})
			print("not json")
			print({FINAL!r})
		"""))
		result = await CapturedRun(config=config).run("draft it")
		assert result.output == "Draft plan: step 1"
		assert result.summary == "Finished the task"
		assert result.cost == 0.02
		assert result.exit_code == 0

	def test_assistant_event_kind(self):
		assert classify_record(DECISION_TEXT).kind == EventKind.ASSISTANT_TEXT
