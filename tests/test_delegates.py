"""Tests for delegate calls and the join-all fan-out."""

import sys
import time

import pytest

from round_relay.delegates import RESEARCHER, STRATEGIST, DelegateCall, DelegateClient

ADVISOR = """
import os, sys, time
name, prompt = sys.argv[1], sys.argv[2]
if prompt == "slow":
	time.sleep(30)
if prompt == "fail":
	sys.stderr.write("API key missing")
	sys.exit(1)
print(f"=== {name} (test) ===")
print()
print(f"{name} answer to {prompt} with {os.environ['MAX_TOKENS']} tokens")
"""


@pytest.fixture
def client(config, make_script):
	script = make_script("advisor.py", ADVISOR)
	c = DelegateClient(config)
	c.command = lambda delegate, prompt: [sys.executable, str(script), delegate.name, prompt]
	return c


class TestDelegateClient:
	"""Single delegate calls."""

	def test_command_runs_ask(self, config):
		command = DelegateClient(config).command(RESEARCHER, "question")
		assert command == [config.python_bin, "-m", "round_relay.cli", "ask", "gemini", "question"]

	@pytest.mark.asyncio
	async def test_answer_banner_stripped(self, client):
		answer = await client.ask(DelegateCall(RESEARCHER, "q1", timeout=10, max_tokens=123))
		assert answer == "gemini answer to q1 with 123 tokens"
		assert client.calls_made == 1

	@pytest.mark.asyncio
	async def test_timeout_placeholder(self, client):
		answer = await client.ask(DelegateCall(STRATEGIST, "slow", timeout=0.3))
		assert answer == "(Strategist response timed out)"

	@pytest.mark.asyncio
	async def test_custom_placeholder(self, client):
		answer = await client.ask(DelegateCall(STRATEGIST, "slow", timeout=0.3, placeholder="(nothing)"))
		assert answer == "(nothing)"

	@pytest.mark.asyncio
	async def test_failure_note(self, client):
		answer = await client.ask(DelegateCall(RESEARCHER, "fail", timeout=10))
		assert answer == "(no response: API key missing)"

	@pytest.mark.asyncio
	async def test_missing_interpreter(self, config):
		c = DelegateClient(config)
		c.command = lambda delegate, prompt: ["/nonexistent/python", prompt]
		answer = await c.ask(DelegateCall(RESEARCHER, "q", timeout=5))
		assert answer.startswith("(no response:")


class TestFanOut:
	"""Join-all with per-branch timeouts."""

	@pytest.mark.asyncio
	async def test_all_answer(self, client):
		research, strategy = await client.fan_out(
			DelegateCall(RESEARCHER, "a", timeout=10),
			DelegateCall(STRATEGIST, "b", timeout=10),
		)
		assert research.startswith("gemini answer to a")
		assert strategy.startswith("gpt answer to b")

	@pytest.mark.asyncio
	async def test_one_branch_times_out(self, client):
		"""A slow branch gets its placeholder; the other still answers."""
		start = time.monotonic()
		research, strategy = await client.fan_out(
			DelegateCall(RESEARCHER, "slow", timeout=0.5),
			DelegateCall(STRATEGIST, "b", timeout=10),
		)
		assert research == RESEARCHER.timeout_placeholder
		assert strategy.startswith("gpt answer to b")
		assert time.monotonic() - start < 10

	@pytest.mark.asyncio
	async def test_unexpected_error_becomes_placeholder(self, config):
		class Exploding(DelegateClient):
			async def ask(self, call):
				if call.delegate is RESEARCHER:
					raise RuntimeError("boom")
				return "fine"

		research, strategy = await Exploding(config).fan_out(
			DelegateCall(RESEARCHER, "a", timeout=1),
			DelegateCall(STRATEGIST, "b", timeout=1),
		)
		assert research == "(Researcher response timed out)"
		assert strategy == "fine"
