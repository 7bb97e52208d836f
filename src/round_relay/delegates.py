"""
Delegate calls - one-shot advisory agents consulted during a round.

Each call runs an advisor subprocess with its own wall-clock timeout and
always returns text: the advisor's answer, or a placeholder when it timed
out or failed. Nothing raised by one delegate reaches its siblings.
"""

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from typing import Optional

from .config import Config, get_config

logger = logging.getLogger(__name__)

BANNER = re.compile(r"^===.*===\s*\n?")


@dataclass(frozen=True)
class Delegate:
	"""An advisor reachable through `round-relay ask <name>`."""
	name: str
	label: str
	emoji: str

	@property
	def timeout_placeholder(self) -> str:
		return f"({self.label} response timed out)"


RESEARCHER = Delegate("gemini", "Researcher", "🔮")
STRATEGIST = Delegate("gpt", "Strategist", "💡")


@dataclass
class DelegateCall:
	"""A prepared delegate invocation for a fan-out."""
	delegate: Delegate
	prompt: str
	timeout: float
	max_tokens: int = 1500
	placeholder: str = ""

	def __post_init__(self) -> None:
		if not self.placeholder:
			self.placeholder = self.delegate.timeout_placeholder


class DelegateClient:
	"""Runs advisor subprocesses."""

	def __init__(self, config: Optional[Config] = None):
		self.config = config or get_config()
		self.calls_made = 0

	def command(self, delegate: Delegate, prompt: str) -> list[str]:
		return [self.config.python_bin, "-m", "round_relay.cli", "ask", delegate.name, prompt]

	async def ask(self, call: DelegateCall) -> str:
		"""
		Ask one delegate.

		Returns:
			The advisor's answer with its banner stripped, the call's
			placeholder on timeout, or a "(no response: ...)" note on failure
		"""
		self.calls_made += 1
		name = call.delegate.label
		env = os.environ.copy()
		env["MAX_TOKENS"] = str(call.max_tokens)

		try:
			proc = await asyncio.create_subprocess_exec(
				*self.command(call.delegate, call.prompt),
				stdin=asyncio.subprocess.DEVNULL,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
				cwd=str(self.config.project_path),
				env=env,
			)
		except OSError as e:
			logger.warning(f"{name} could not be started: {e}")
			return f"(no response: {e})"

		try:
			stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=call.timeout)
		except asyncio.TimeoutError:
			logger.info(f"{name} timed out after {call.timeout}s")
			await _terminate(proc)
			return call.placeholder
		except asyncio.CancelledError:
			await _terminate(proc)
			raise

		out = stdout.decode(errors="replace") if stdout else ""
		err = stderr.decode(errors="replace") if stderr else ""

		if proc.returncode == 0 and out.strip():
			cleaned = BANNER.sub("", out, count=1).strip()
			logger.info(f"{name} answered ({len(cleaned)} chars)")
			return cleaned

		logger.info(f"{name} failed (exit: {proc.returncode}) {err[:100]}")
		return f"(no response: {err[:80].strip() or f'exit {proc.returncode}'})"

	async def fan_out(self, *calls: DelegateCall) -> list[str]:
		"""
		Run calls concurrently and wait for all of them.

		Each branch is bounded by its own timeout; an unexpected error in one
		branch becomes that branch's placeholder.
		"""
		results = await asyncio.gather(*(self.ask(c) for c in calls), return_exceptions=True)
		return [_settle(call, result) for call, result in zip(calls, results)]


def _settle(call: DelegateCall, result: object) -> str:
	if isinstance(result, asyncio.CancelledError):
		raise result
	if isinstance(result, BaseException):
		logger.warning(f"{call.delegate.label} failed: {result}")
		return call.placeholder
	return str(result)


async def _terminate(proc: asyncio.subprocess.Process) -> None:
	if proc.returncode is not None:
		return
	try:
		proc.kill()
	except ProcessLookupError:
		return
	await proc.wait()

