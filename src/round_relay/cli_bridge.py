"""
Claude CLI Bridge - runs the claude CLI in stream-json print mode.

Handles:
- Spawning one agent process per run (prompt written to stdin up front)
- Reassembling stdout/stderr lines across chunk boundaries
- Classifying each line and relaying it to the live message
- Decision detection on every line
- Per-run audit log
- Timeout and termination
"""

import asyncio
import codecs
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .config import Config, get_config
from .decisions import DecisionCandidate, DecisionTracker, HandoffFiles, PendingQuestion, QuestionStore
from .events import (
	DEFAULT_DELEGATE_PATTERNS,
	LEADER_LABEL,
	AgentEvent,
	DelegatePattern,
	EventKind,
	classify_record,
	classify_tool,
	describe,
	format_final_result,
	format_line,
	truncate,
)
from .live_relay import LiveRelayMessage, send_long_message
from .prompts import DECISION_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


class CLIBridgeError(Exception):
	"""Base exception for CLI bridge errors."""
	pass


class CLIStartupError(CLIBridgeError):
	"""Raised when the CLI process cannot be spawned."""
	pass


class CLITimeoutError(CLIBridgeError):
	"""Raised when a CLI run exceeds its wall-clock budget."""
	pass


class CLICancelledError(CLIBridgeError):
	"""Raised when a run is started after it was already killed."""
	pass


class LineBuffer:
	"""Splits a chunked stream into complete lines, holding any trailing partial."""

	def __init__(self):
		self._partial = ""

	def feed(self, text: str) -> list[str]:
		data = self._partial + text
		lines = data.split("\n")
		self._partial = lines.pop()
		return lines

	def drain(self) -> str:
		"""Return and clear the incomplete remainder (used at EOF)."""
		rest, self._partial = self._partial, ""
		return rest

	@property
	def pending(self) -> str:
		return self._partial


class AuditLog:
	"""Append-only per-run log of raw output and lifecycle markers."""

	def __init__(self, log_dir: str | Path, mode: str, prompt: str):
		log_path = Path(log_dir)
		log_path.mkdir(parents=True, exist_ok=True)
		now = datetime.now()
		self.path = log_path / f"{now.strftime('%Y-%m-%dT%H-%M-%S-%f')}_{mode}.log"
		self._append("\n".join([
			"=== Agent Session Log ===",
			f"Date: {now.isoformat(timespec='seconds')}",
			f"Mode: {mode}",
			f"Prompt: {prompt[:500]}",
			"=" * 50,
			"",
		]))

	def _append(self, text: str) -> None:
		with open(self.path, "a", encoding="utf-8") as f:
			f.write(text + "\n")

	def chunk(self, stream: str, text: str) -> None:
		ts = datetime.now().strftime("%H:%M:%S")
		self._append(f"[{ts}] [{stream}] {text.rstrip()}")

	def exit(self, code: int | None) -> None:
		self._append(f"\n{'=' * 50}\nSession ended with exit code: {code}")

	def error(self, message: str) -> None:
		self._append(f"[ERROR] {message}")


def build_claude_args(max_turns: int | None = None) -> list[str]:
	args = ["-p", "--verbose", "--output-format", "stream-json"]
	if max_turns:
		args += ["--max-turns", str(max_turns)]
	args += ["--append-system-prompt", DECISION_SYSTEM_PROMPT]
	return args


class AgentProcess:
	"""
	One supervised agent process.

	Subclasses decide what happens to each complete output line by
	implementing handle_line().
	"""

	KILL_GRACE_SECONDS = 5.0

	def __init__(self, config: Optional[Config] = None, mode: str = "run"):
		self.config = config or get_config()
		self.mode = mode
		self.process: asyncio.subprocess.Process | None = None
		self.audit: AuditLog | None = None
		self._killed = False

	def command(self, max_turns: int | None = None) -> list[str]:
		return [self.config.claude_bin, *build_claude_args(max_turns)]

	async def handle_line(self, line: str, is_error: bool) -> None:
		raise NotImplementedError

	async def on_timeout(self, timeout: float) -> None:
		pass

	async def _spawn_and_wait(self, prompt: str, timeout: float, max_turns: int | None = None) -> int:
		"""
		Spawn, feed the prompt, pump both streams until exit.

		Raises:
			CLIStartupError: If the process could not be spawned
			CLICancelledError: If kill() was called before the spawn
		"""
		if self._killed:
			raise CLICancelledError("Run was cancelled before the agent started")

		self.audit = AuditLog(self.config.session_log_dir, self.mode, prompt)
		env = os.environ.copy()
		env["FORCE_COLOR"] = "0"

		try:
			self.process = await asyncio.create_subprocess_exec(
				*self.command(max_turns),
				stdin=asyncio.subprocess.PIPE,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
				cwd=str(self.config.project_path),
				env=env,
			)
		except OSError as e:
			self.audit.error(str(e))
			raise CLIStartupError(f"Failed to start {self.config.claude_bin}: {e}") from e

		logger.info(f"Agent process {self.process.pid} started ({self.mode}, {len(prompt)} chars)")

		if self._killed:
			# kill() landed while the spawn was in progress
			self.process.terminate()

		try:
			try:
				self.process.stdin.write(prompt.encode())
				await self.process.stdin.drain()
			except (BrokenPipeError, ConnectionResetError) as e:
				logger.warning(f"Agent process closed stdin early: {e}")
			finally:
				self.process.stdin.close()

			await asyncio.wait_for(self._pump_all(), timeout=timeout)
		except asyncio.TimeoutError:
			logger.warning(f"Agent process {self.process.pid} timed out after {timeout}s")
			self.audit.error(f"Timed out after {timeout}s")
			self.kill()
			await self.on_timeout(timeout)
			await self._reap()
		except asyncio.CancelledError:
			logger.warning(f"Agent process {self.process.pid} cancelled, terminating")
			self.audit.error("Cancelled")
			self.kill()
			await self._reap()
			raise

		code = await self.process.wait()
		self.audit.exit(code)
		logger.info(f"Agent process {self.process.pid} exited with {code}")
		return code

	async def _reap(self) -> None:
		"""Wait out the grace period after SIGTERM, then SIGKILL."""
		try:
			await asyncio.wait_for(self.process.wait(), timeout=self.KILL_GRACE_SECONDS)
		except asyncio.TimeoutError:
			self.process.kill()
			await self.process.wait()

	async def _pump_all(self) -> None:
		await asyncio.gather(
			self._pump(self.process.stdout, "STDOUT", is_error=False),
			self._pump(self.process.stderr, "STDERR", is_error=True),
		)
		await self.process.wait()

	async def _pump(self, stream: asyncio.StreamReader, name: str, is_error: bool) -> None:
		buffer = LineBuffer()
		decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
		while True:
			chunk = await stream.read(READ_CHUNK_SIZE)
			if not chunk:
				break
			text = decoder.decode(chunk)
			self.audit.chunk(name, text)
			for line in buffer.feed(text):
				await self._safe_handle(line, is_error)
		rest = buffer.drain() + decoder.decode(b"", final=True)
		if rest:
			await self._safe_handle(rest, is_error)

	async def _safe_handle(self, line: str, is_error: bool) -> None:
		try:
			await self.handle_line(line, is_error)
		except Exception:
			logger.exception("Failed to handle agent output line")

	def kill(self) -> bool:
		"""
		Send SIGTERM to the running process. Safe to call repeatedly.

		Called before the process exists, it only marks the run so that
		it never starts.

		Returns:
			True if a signal was sent by this call
		"""
		if self.process is None:
			self._killed = True
			return False
		if self._killed or self.process.returncode is not None:
			return False
		self._killed = True
		try:
			self.process.terminate()
		except ProcessLookupError:
			return False
		logger.info(f"Sent SIGTERM to agent process {self.process.pid}")
		return True

	@property
	def is_running(self) -> bool:
		return self.process is not None and self.process.returncode is None


DecisionCallback = Callable[[PendingQuestion], Awaitable[None]]


class ClaudeCodeRelay(AgentProcess):
	"""
	Live-relayed agent run.

	Every line goes through the decision tracker; classified events are
	turned into status lines on the LiveRelayMessage.
	"""

	LONG_RESULT_THRESHOLD = 500
	ASSISTANT_PREVIEW_CHARS = 200
	DELEGATE_PREVIEW_CHARS = 250

	def __init__(
		self,
		relay: LiveRelayMessage,
		questions: QuestionStore,
		handoff: HandoffFiles | None = None,
		on_decision: DecisionCallback | None = None,
		config: Optional[Config] = None,
		delegate_patterns: tuple[DelegatePattern, ...] = DEFAULT_DELEGATE_PATTERNS,
		timeout: float | None = None,
	):
		super().__init__(config=config)
		self.relay = relay
		self.questions = questions
		self.handoff = handoff
		self.on_decision = on_decision
		self.delegate_patterns = delegate_patterns
		self.timeout = timeout or self.config.relay_timeout
		self.tracker = DecisionTracker()
		self.final_event: AgentEvent | None = None
		# Single slot: the delegate whose tool result comes next
		self._awaiting_result: DelegatePattern | None = None

	@property
	def awaiting_result(self) -> DelegatePattern | None:
		return self._awaiting_result

	async def run(self, prompt: str, mode: str = "autopilot", max_turns: int | None = None) -> int:
		"""
		Run the agent to completion.

		Returns:
			Process exit code

		Raises:
			CLIStartupError: If the process could not be spawned
		"""
		self.mode = mode
		await self.relay.add_line(f"\n{LEADER_LABEL}: \"{truncate(prompt, 200)}\"")
		await self.relay.add_line(f"🚀 Mode: {mode}")
		await self.relay.add_line("⏱️ Agent work starting...\n")

		try:
			code = await self._spawn_and_wait(prompt, self.timeout, max_turns)
		except CLIStartupError as e:
			await self.relay.add_line(f"❌ Error: {e}")
			raise

		for candidate in self.tracker.flush():
			await self._publish_decision(candidate)

		await self.relay.finalize(f"✅ Done (exit: {code})")
		return code

	async def on_timeout(self, timeout: float) -> None:
		await self.relay.add_line(f"⏱️ Timed out after {int(timeout)}s, stopping agent")

	async def handle_line(self, line: str, is_error: bool) -> None:
		trimmed = line.strip()
		if not trimmed:
			return

		event = classify_record(trimmed)
		logger.debug(describe(event))
		content, detect_text, preformatted = await self._render(event, trimmed)
		if detect_text:
			await self._check_decisions(detect_text)
		if not content or len(content) < 2:
			return

		if preformatted:
			await self.relay.add_line(content)
		else:
			formatted = format_line(content, is_error)
			if formatted:
				await self.relay.add_line(formatted)

	async def _render(self, event: AgentEvent, trimmed: str) -> tuple[str | None, str | None, bool]:
		"""
		Map an event to (relay content, text for decision detection, preformatted).

		Tool invocations are reported here directly.
		"""
		if event.kind == EventKind.SESSION_START:
			content = f"⚙️ Session started ({event.model})"
			return content, content, True

		if event.kind in (EventKind.ASSISTANT_TEXT, EventKind.TOOL_INVOCATION):
			for tool in event.tools:
				visible, delegate = classify_tool(tool, self.delegate_patterns)
				self._awaiting_result = delegate
				if visible:
					await self.relay.add_line(visible)
			if not event.text:
				return None, None, True
			content = f"{LEADER_LABEL}: {truncate(event.text, self.ASSISTANT_PREVIEW_CHARS)}"
			return content, event.text, True

		if event.kind == EventKind.TOOL_RESULT:
			delegate, self._awaiting_result = self._awaiting_result, None
			if delegate is None or not delegate.relay_result or not event.text:
				return None, None, True
			content = f"{delegate.emoji} *{delegate.label}*: {truncate(event.text, self.DELEGATE_PREVIEW_CHARS)}"
			return content, content, True

		if event.kind == EventKind.FINAL_RESULT:
			self.final_event = event
			header = format_final_result(event)
			if len(event.text) > self.LONG_RESULT_THRESHOLD:
				await self.relay.add_line(header)
				await send_long_message(self.relay.bot, self.relay.chat_id, event.text)
				return None, event.text, True
			return f"{header}\n{event.text}", event.text, True

		if event.kind == EventKind.RAW_TEXT:
			return trimmed, trimmed, False

		return None, None, True

	async def _check_decisions(self, text: str) -> None:
		for candidate in self.tracker.feed(text):
			await self._publish_decision(candidate)

	async def _publish_decision(self, candidate: DecisionCandidate) -> None:
		question = self.questions.add_question(candidate)
		if self.handoff:
			try:
				self.handoff.write_question(question)
			except OSError as e:
				logger.warning(f"Could not write question file: {e}")
		if self.on_decision:
			try:
				await self.on_decision(question)
			except Exception:
				logger.exception(f"Failed to relay question {question.id}")


@dataclass
class CaptureResult:
	"""Output of a captured (not live-relayed) run."""
	output: str = ""
	summary: str = ""
	cost: float = 0.0
	exit_code: int | None = None


class CapturedRun(AgentProcess):
	"""Agent run whose assistant text is collected instead of relayed."""

	MAX_OUTPUT_CHARS = 3000
	MAX_SUMMARY_CHARS = 1000

	def __init__(self, config: Optional[Config] = None, timeout: float | None = None):
		super().__init__(config=config)
		self.timeout = timeout or self.config.round_timeout
		self._captured: list[str] = []
		self.result = CaptureResult()

	async def run(self, prompt: str, mode: str = "draft", max_turns: int | None = 15) -> CaptureResult:
		"""
		Run the agent and return what it wrote.

		Raises:
			CLIStartupError: If the process could not be spawned
		"""
		self.mode = mode
		code = await self._spawn_and_wait(prompt, self.timeout, max_turns)
		self.result.exit_code = code
		self.result.output = "\n".join(self._captured)[: self.MAX_OUTPUT_CHARS]
		return self.result

	async def handle_line(self, line: str, is_error: bool) -> None:
		if is_error:
			return
		trimmed = line.strip()
		if not trimmed:
			return
		event = classify_record(trimmed)
		if event.kind in (EventKind.ASSISTANT_TEXT, EventKind.TOOL_INVOCATION) and event.text:
			self._captured.append(event.text)
		elif event.kind == EventKind.FINAL_RESULT:
			self.result.summary = event.text[: self.MAX_SUMMARY_CHARS]
			self.result.cost = event.cost
