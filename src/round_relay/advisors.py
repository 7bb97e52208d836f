"""
Advisor backends behind `round-relay ask <name>`.

The Researcher answers through Gemini (google-genai), the Strategist through
OpenAI chat completions. Both print a one-line `=== ... ===` banner before
the answer; delegate callers strip it.
"""

import logging
import os
from dataclasses import dataclass

from google import genai
from google.genai import types as genai_types
from openai import OpenAI, OpenAIError

logger = logging.getLogger(__name__)


class AdvisorError(Exception):
	"""Raised when an advisor cannot produce an answer."""
	pass


@dataclass(frozen=True)
class Advisor:
	name: str
	display: str
	model: str
	api_key_env: str
	default_max_tokens: int


GEMINI = Advisor("gemini", "Researcher", "gemini-2.5-flash", "GEMINI_API_KEY", 16384)
GPT = Advisor("gpt", "Strategist", "gpt-4o", "OPENAI_API_KEY", 2048)
ADVISORS = {a.name: a for a in (GEMINI, GPT)}

ROLES = {
	"researcher": (
		"You are the senior researcher of a software team. "
		"Your role: current technology research, documentation checks, library updates and trend analysis. "
		"Be thorough but concise, and cite sources where you can."
	),
	"meeting": (
		"You are a senior technical advisor in a team meeting. "
		"Give your expert opinion with concrete reasoning. "
		"If you disagree with a proposed approach, say why and offer alternatives. "
		"Do not simply agree with others. Weigh cost, implementation effort and user experience."
	),
	"ux": (
		"You are a UX/UI research specialist. "
		"Research current UI trends, mobile UX patterns, accessibility and design systems. "
		"Focus on mobile-first and practical recommendations."
	),
	"default": (
		"You are a versatile senior advisor to a software team. "
		"You help with research, documentation, strategy and technical decisions. "
		"Be concise and actionable."
	),
}


def build_prompt(question: str, role: str = "default") -> str:
	system = ROLES.get(role, ROLES["default"])
	return f"[Role Context]\n{system}\n\n[Question]\n{question}"


def max_tokens_from_env(advisor: Advisor) -> int:
	"""MAX_TOKENS from the environment, falling back to the advisor default."""
	raw = os.getenv("MAX_TOKENS", "")
	try:
		value = int(raw)
	except ValueError:
		return advisor.default_max_tokens
	return value if value > 0 else advisor.default_max_tokens


def banner(advisor: Advisor, role: str) -> str:
	return f"=== {advisor.display} ({advisor.model}, role: {role}) ==="


def _api_key(advisor: Advisor) -> str:
	key = os.getenv(advisor.api_key_env)
	if not key:
		raise AdvisorError(f"{advisor.api_key_env} is not set")
	return key


def ask_gemini(question: str, role: str = "default", max_tokens: int | None = None) -> str:
	client = genai.Client(api_key=_api_key(GEMINI))
	try:
		response = client.models.generate_content(
			model=GEMINI.model,
			contents=build_prompt(question, role),
			config=genai_types.GenerateContentConfig(
				max_output_tokens=max_tokens or max_tokens_from_env(GEMINI),
			),
		)
	except Exception as e:
		raise AdvisorError(f"Gemini API error: {e}") from e
	return response.text or ""


def ask_gpt(question: str, role: str = "default", max_tokens: int | None = None) -> str:
	client = OpenAI(api_key=_api_key(GPT))
	try:
		response = client.chat.completions.create(
			model=GPT.model,
			messages=[
				{"role": "system", "content": ROLES.get(role, ROLES["default"])},
				{"role": "user", "content": question},
			],
			max_tokens=max_tokens or max_tokens_from_env(GPT),
		)
	except OpenAIError as e:
		raise AdvisorError(f"OpenAI API error: {e}") from e
	return response.choices[0].message.content or ""


BACKENDS = {
	GEMINI.name: ask_gemini,
	GPT.name: ask_gpt,
}


def ask(name: str, question: str, role: str = "default") -> str:
	"""
	Ask an advisor by name.

	Returns:
		The banner line, a blank line and the answer

	Raises:
		AdvisorError: Unknown advisor, missing key or API failure
	"""
	advisor = ADVISORS.get(name)
	if advisor is None:
		raise AdvisorError(f"Unknown advisor: {name}")
	if not question.strip():
		raise AdvisorError("Empty question")
	logger.info(f"Asking {advisor.display} ({len(question)} chars, role {role})")
	answer = BACKENDS[name](question, role)
	return f"{banner(advisor, role)}\n\n{answer}"
