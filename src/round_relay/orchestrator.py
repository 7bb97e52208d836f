"""
Round discussion orchestrator.

Drives one task through the deliberation rounds:

	INIT -> OPINION (budget >= 2) -> DRAFT -> CRITIQUE (budget >= 3) -> FINAL -> DONE

The round budget comes from the complexity classifier unless forced.
Delegate rounds fan out two advisor calls with individual timeouts; the
primary agent runs either live-relayed (ClaudeCodeRelay) or captured
(CapturedRun) depending on the round.
"""

import logging
import time
from functools import partial
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from . import prompts
from .cli_bridge import AgentProcess, CaptureResult, CapturedRun, CLIBridgeError, ClaudeCodeRelay
from .complexity import ComplexityResult, classify_complexity
from .config import Config, get_config
from .decisions import HandoffFiles, PendingQuestion, QuestionStore
from .delegates import RESEARCHER, STRATEGIST, DelegateCall, DelegateClient
from .live_relay import LiveRelayMessage, send_long_message

logger = logging.getLogger(__name__)

MAX_ROUNDS = 4
DELEGATE_ROUND_COST = 0.005
PRIMARY_RUN_COST = 0.03


class RoundPhase(str, Enum):
	INIT = "init"
	OPINION = "opinion"
	DRAFT = "draft"
	CRITIQUE = "critique"
	FINAL = "final"
	DONE = "done"


# phase -> (round budget -> next phase)
TRANSITIONS: dict[RoundPhase, Callable[[int], RoundPhase]] = {
	RoundPhase.INIT: lambda budget: RoundPhase.OPINION if budget >= 2 else RoundPhase.DRAFT,
	RoundPhase.OPINION: lambda budget: RoundPhase.DRAFT,
	RoundPhase.DRAFT: lambda budget: RoundPhase.CRITIQUE if budget >= 3 else RoundPhase.DONE,
	RoundPhase.CRITIQUE: lambda budget: RoundPhase.FINAL,
	RoundPhase.FINAL: lambda budget: RoundPhase.DONE,
}


def next_phase(phase: RoundPhase, budget: int) -> RoundPhase:
	"""Pure transition function of the round state machine."""
	if phase == RoundPhase.DONE:
		raise ValueError("DONE is terminal")
	return TRANSITIONS[phase](budget)


def round_number(phase: RoundPhase, budget: int) -> int:
	"""Round number shown to the user for a phase."""
	if phase == RoundPhase.OPINION:
		return 1
	if phase == RoundPhase.DRAFT:
		return 1 if budget == 1 else 2
	if phase == RoundPhase.CRITIQUE:
		return 3
	if phase == RoundPhase.FINAL:
		return 4 if budget >= 4 else 3
	return 0


MODE_LABELS = {
	1: "Direct execution",
	2: "Opinions + execution",
	3: "Opinions + draft + critique",
	4: "Full round discussion",
}


@dataclass
class RoundState:
	"""Mutable state of one orchestration."""
	session_key: Any
	chat_id: Any
	task: str
	mode: str
	budget: int
	complexity: ComplexityResult
	phase: RoundPhase = RoundPhase.INIT
	round_index: int = 0
	contributions: dict[str, str] = field(default_factory=dict)
	total_cost: float = 0.0
	primary_runs: int = 0
	prompts_sent: list[str] = field(default_factory=list)
	active_process: AgentProcess | None = None
	cancelled: bool = False
	started_at: float = field(default_factory=time.monotonic)

	def enter_round(self, number: int) -> None:
		if number < self.round_index:
			raise ValueError(f"Round index went backwards: {self.round_index} -> {number}")
		self.round_index = min(number, self.budget)


class SessionRegistry:
	"""At most one active orchestration per session key."""

	def __init__(self):
		self._sessions: dict[Any, RoundState] = {}

	def get(self, key: Any) -> RoundState | None:
		return self._sessions.get(key)

	def set(self, key: Any, state: RoundState) -> None:
		self.cancel(key)
		self._sessions[key] = state

	def remove(self, key: Any, state: RoundState | None = None) -> None:
		"""Remove the entry; with `state`, only if it is still the registered one."""
		current = self._sessions.get(key)
		if current is not None and (state is None or current is state):
			del self._sessions[key]

	def cancel(self, key: Any) -> bool:
		"""
		Cancel the active orchestration for a key. Idempotent.

		Returns:
			True if there was an active orchestration
		"""
		state = self._sessions.pop(key, None)
		if state is None:
			return False
		state.cancelled = True
		if state.active_process is not None:
			state.active_process.kill()
		logger.info(f"Cancelled session {key} in {state.phase.value}")
		return True

	def __contains__(self, key: Any) -> bool:
		return key in self._sessions

	def __len__(self) -> int:
		return len(self._sessions)


class ProgressHeader:
	"""Persistent progress message, edited in place at each round transition."""

	def __init__(self, bot: Any, chat_id: Any, clock: Callable[[], float] = time.monotonic):
		self.bot = bot
		self.chat_id = chat_id
		self._clock = clock
		self.message_id: int | None = None
		self.total_rounds = 0
		self.current_round = 0
		self.start_time = clock()

	@staticmethod
	def bar(current: int, total: int) -> str:
		return f"[{'▓' * current}{'░' * (total - current)}] {current}/{total}"

	def elapsed(self) -> int:
		return round(self._clock() - self.start_time)

	async def init(self, task: str, complexity: ComplexityResult, total_rounds: int) -> None:
		self.total_rounds = total_rounds
		text = "\n".join([
			"━━ ROUND DISCUSSION ━━",
			"",
			f"Task: {task[:80]}{'...' if len(task) > 80 else ''}",
			f"Mode: {MODE_LABELS[total_rounds]} ({total_rounds}R)",
			f"Complexity: {complexity.label.value}",
			"",
			f"Progress: {self.bar(0, total_rounds)}",
		])
		msg = await self.bot.send_message(chat_id=self.chat_id, text=text)
		self.message_id = msg.message_id

	async def update(self, current_round: int, status: str) -> None:
		self.current_round = current_round
		text = "\n".join([
			"━━ ROUND DISCUSSION ━━",
			f"Progress: {self.bar(current_round, self.total_rounds)}",
			f"Elapsed: {self.elapsed()}s | {status}",
		])
		try:
			await self.bot.edit_message_text(text=text, chat_id=self.chat_id, message_id=self.message_id)
		except Exception as e:
			logger.debug(f"Progress header edit skipped: {e}")

	async def start_round(self, number: int, description: str) -> None:
		await self.update(number, description)
		await self.bot.send_message(
			chat_id=self.chat_id,
			text=f"── R{number}/{self.total_rounds}: {description} ──",
		)

	async def agent_response(self, agent: str, emoji: str, response: str) -> None:
		text = f"{emoji} *{agent}*:\n{response[:900]}{'...' if len(response) > 900 else ''}"
		await send_long_message(self.bot, self.chat_id, text, parse_mode="Markdown")

	async def finalize(self, summary: str, total_cost: float) -> None:
		cost = f" | Cost: ${total_cost:.4f}" if total_cost else ""
		text = "\n".join([
			"━━ DISCUSSION COMPLETE ━━",
			f"Rounds: {self.total_rounds} | Time: {self.elapsed()}s{cost}",
			"",
			summary[:1500] if summary else "Work complete",
		])
		await send_long_message(self.bot, self.chat_id, text)


class RoundDiscussion:
	"""
	Runs round discussions for chat sessions.

	Agent processes and live messages are created through factories so the
	state machine can be exercised without spawning real agents.
	"""

	DRAFT_REVIEW_CHARS = 2000
	DRAFT_FINAL_CHARS = 1500
	DIRECT_MAX_TURNS = 25
	DRAFT_MAX_TURNS = 15

	def __init__(
		self,
		bot: Any,
		questions: QuestionStore,
		handoff: HandoffFiles,
		registry: Optional[SessionRegistry] = None,
		delegates: Optional[DelegateClient] = None,
		config: Optional[Config] = None,
		on_decision: Optional[Callable[[Any, PendingQuestion], Awaitable[None]]] = None,
		relay_factory: Optional[Callable[[LiveRelayMessage], ClaudeCodeRelay]] = None,
		capture_factory: Optional[Callable[[], CapturedRun]] = None,
		clock: Callable[[], float] = time.monotonic,
	):
		self.bot = bot
		self.questions = questions
		self.handoff = handoff
		self.config = config or get_config()
		self.registry = registry if registry is not None else SessionRegistry()
		self.delegates = delegates or DelegateClient(self.config)
		self.on_decision = on_decision
		self.relay_factory = relay_factory or self._default_relay
		self.capture_factory = capture_factory or (lambda: CapturedRun(config=self.config))
		self._clock = clock

	def _default_relay(self, live: LiveRelayMessage) -> ClaudeCodeRelay:
		return ClaudeCodeRelay(
			relay=live,
			questions=self.questions,
			handoff=self.handoff,
			on_decision=partial(self.on_decision, live.chat_id) if self.on_decision else None,
			config=self.config,
		)

	def cancel(self, session_key: Any) -> bool:
		return self.registry.cancel(session_key)

	def is_active(self, session_key: Any) -> bool:
		return session_key in self.registry

	async def run(
		self,
		session_key: Any,
		chat_id: Any,
		task: str,
		mode: str = "autopilot",
		force_rounds: int | None = None,
	) -> RoundState:
		"""
		Run a task through the rounds. Never raises; failures go to the chat.

		Returns:
			The final RoundState (phase DONE unless cancelled or failed)
		"""
		# INIT
		self.registry.cancel(session_key)
		try:
			self.handoff.clear()
		except OSError as e:
			logger.warning(f"Could not clear hand-off files: {e}")

		complexity = classify_complexity(task)
		budget = complexity.rounds
		if force_rounds is not None:
			budget = min(MAX_ROUNDS, max(1, force_rounds))

		state = RoundState(
			session_key=session_key,
			chat_id=chat_id,
			task=task,
			mode=mode,
			budget=budget,
			complexity=complexity,
			started_at=self._clock(),
		)
		self.registry.set(session_key, state)
		logger.info(f"Session {session_key}: {budget} rounds ({complexity.label.value}, score {complexity.score})")

		header = ProgressHeader(self.bot, chat_id, clock=self._clock)
		handlers = {
			RoundPhase.OPINION: self._opinion_round,
			RoundPhase.DRAFT: self._draft_round,
			RoundPhase.CRITIQUE: self._critique_round,
			RoundPhase.FINAL: self._final_round,
		}

		try:
			await header.init(task, complexity, budget)
			phase = next_phase(RoundPhase.INIT, budget)
			while phase != RoundPhase.DONE and not state.cancelled:
				state.phase = phase
				state.enter_round(round_number(phase, budget))
				await handlers[phase](state, header)
				if state.cancelled:
					break
				phase = next_phase(phase, budget)

			if not state.cancelled:
				state.phase = RoundPhase.DONE
				await header.finalize(self._summary(state), state.total_cost)
		except Exception as e:
			logger.exception(f"Round discussion failed for {session_key}")
			await self._notify_failure(chat_id, e)
		finally:
			self.registry.remove(session_key, state)

		return state

	def _summary(self, state: RoundState) -> str:
		if state.budget >= 3:
			return "All rounds complete. Team feedback applied."
		return state.contributions.get("result", "")

	async def _notify_failure(self, chat_id: Any, error: Exception) -> None:
		try:
			await send_long_message(self.bot, chat_id, f"❌ Round discussion failed: {error}")
		except Exception:
			logger.exception("Failed to report round discussion failure")

	# ==================== Rounds ====================

	async def _opinion_round(self, state: RoundState, header: ProgressHeader) -> None:
		await header.start_round(state.round_index, "Gathering opinions")
		research, strategy = await self.delegates.fan_out(
			DelegateCall(RESEARCHER, prompts.research_opinion(state.task), self.config.delegate_timeout, 1500),
			DelegateCall(STRATEGIST, prompts.strategy_opinion(state.task), self.config.delegate_timeout, 1500),
		)
		if state.cancelled:
			return
		state.contributions["research"] = research
		state.contributions["strategy"] = strategy
		await header.agent_response(f"{RESEARCHER.label} (research)", RESEARCHER.emoji, research)
		await header.agent_response(f"{STRATEGIST.label} (strategy)", STRATEGIST.emoji, strategy)
		state.total_cost += DELEGATE_ROUND_COST

	async def _draft_round(self, state: RoundState, header: ProgressHeader) -> None:
		research = state.contributions.get("research", "")
		strategy = state.contributions.get("strategy", "")

		if state.budget == 1:
			await header.start_round(state.round_index, "Direct execution")
			await self._live_round(state, state.task, self.DIRECT_MAX_TURNS)
			return

		if state.budget == 2:
			await header.start_round(state.round_index, "Execution with team input")
			prompt = prompts.draft_execute(state.task, research, strategy)
			await self._live_round(state, prompt, self.DIRECT_MAX_TURNS)
			return

		await header.start_round(state.round_index, "Draft")
		prompt = prompts.draft_for_review(state.task, research, strategy)
		result = await self._captured_round(state, prompt)
		if state.cancelled:
			return
		state.contributions["draft"] = result.output or result.summary or ""
		state.total_cost += result.cost or PRIMARY_RUN_COST
		if state.contributions["draft"]:
			await header.agent_response("Leader (draft)", "👨‍✈️", state.contributions["draft"][:800])

	async def _critique_round(self, state: RoundState, header: ProgressHeader) -> None:
		await header.start_round(state.round_index, "Critique & validation")
		draft = state.contributions.get("draft", "")[: self.DRAFT_REVIEW_CHARS]
		critique, validation = await self.delegates.fan_out(
			DelegateCall(STRATEGIST, prompts.critique(state.task, draft), self.config.critique_timeout, 2000),
			DelegateCall(RESEARCHER, prompts.validation(state.task, draft), self.config.delegate_timeout, 1000),
		)
		if state.cancelled:
			return
		state.contributions["critique"] = critique
		state.contributions["validation"] = validation
		await header.agent_response(f"{STRATEGIST.label} (critique)", STRATEGIST.emoji, critique)
		await header.agent_response(f"{RESEARCHER.label} (validation)", RESEARCHER.emoji, validation)
		state.total_cost += DELEGATE_ROUND_COST

	async def _final_round(self, state: RoundState, header: ProgressHeader) -> None:
		await header.start_round(state.round_index, "Final implementation with feedback")
		prompt = prompts.final(
			state.task,
			state.contributions.get("draft", "")[: self.DRAFT_FINAL_CHARS],
			state.contributions.get("critique", ""),
			state.contributions.get("validation", ""),
		)
		await self._live_round(state, prompt, None)

	# ==================== Primary agent ====================

	async def _live_round(self, state: RoundState, prompt: str, max_turns: int | None) -> None:
		number = state.round_index
		title = f"{state.mode.upper()}: R{number} run" if state.phase == RoundPhase.DRAFT else f"R{number}: final implementation"
		live = LiveRelayMessage(
			self.bot,
			state.chat_id,
			max_lines=self.config.relay_max_lines,
			update_interval=self.config.relay_update_interval,
		)
		await live.init(title)
		if state.cancelled:
			return
		relay = self.relay_factory(live)
		if not self._attach(state, relay):
			return
		state.primary_runs += 1
		state.prompts_sent.append(prompt)
		try:
			await relay.run(prompt, state.mode, max_turns=max_turns)
		except CLIBridgeError as e:
			if state.cancelled:
				return
			await live.add_line(f"❌ Run failed: {e}")
		finally:
			state.active_process = None

		final = relay.final_event
		if final is not None and final.text:
			state.contributions["result"] = final.text
		state.total_cost += (final.cost if final is not None and final.cost else 0) or PRIMARY_RUN_COST

	async def _captured_round(self, state: RoundState, prompt: str) -> CaptureResult:
		if state.cancelled:
			return CaptureResult()
		capture = self.capture_factory()
		if not self._attach(state, capture):
			return CaptureResult()
		state.primary_runs += 1
		state.prompts_sent.append(prompt)
		try:
			return await capture.run(prompt, state.mode, max_turns=self.DRAFT_MAX_TURNS)
		except CLIBridgeError as e:
			if state.cancelled:
				return CaptureResult()
			logger.warning(f"Draft run failed: {e}")
			await send_long_message(self.bot, state.chat_id, f"❌ Draft run failed: {e}")
			return CaptureResult()
		finally:
			state.active_process = None

	@staticmethod
	def _attach(state: RoundState, process: AgentProcess) -> bool:
		"""
		Make `process` the session's active process.

		Returns:
			False if the session was cancelled meanwhile; the process is
			then killed so it never starts
		"""
		state.active_process = process
		if state.cancelled:
			process.kill()
			state.active_process = None
			return False
		return True
