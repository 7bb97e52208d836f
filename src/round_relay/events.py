"""
Agent output classification.

Pure functions turning one line of `claude -p --output-format stream-json`
output into a typed AgentEvent, deciding which tool calls are worth showing,
and formatting plain text lines for the live relay.
"""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from .decisions import DECISION_MARKER, OPTIONS_MARKER, strip_ansi

LEADER_LABEL = "👨‍✈️ *Leader*"


class EventKind(str, Enum):
	"""Discriminant of a classified output line."""
	SESSION_START = "session_start"
	ASSISTANT_TEXT = "assistant_text"
	TOOL_INVOCATION = "tool_invocation"
	TOOL_RESULT = "tool_result"
	FINAL_RESULT = "final_result"
	RAW_TEXT = "raw_text"
	IGNORED = "ignored"


@dataclass
class ToolInvocation:
	name: str
	input: dict = field(default_factory=dict)


@dataclass
class AgentEvent:
	"""One classified line of agent output."""
	kind: EventKind
	text: str = ""
	model: str = ""
	tools: list[ToolInvocation] = field(default_factory=list)
	cost: float = 0.0
	turns: int = 0
	raw: str = ""


@dataclass(frozen=True)
class DelegatePattern:
	"""A tool call that hands work to a delegate whose reply should be attributed."""
	name: str
	label: str
	emoji: str
	tool: str
	command_substring: str = ""
	relay_result: bool = True

	def matches(self, tool: ToolInvocation) -> bool:
		if tool.name != self.tool:
			return False
		if not self.command_substring:
			return True
		return self.command_substring in str(tool.input.get("command", ""))


DEFAULT_DELEGATE_PATTERNS = (
	DelegatePattern("gemini", "Researcher", "🔮", tool="Bash", command_substring="ask gemini"),
	DelegatePattern("gpt", "Strategist", "💡", tool="Bash", command_substring="ask gpt"),
	DelegatePattern("subagent", "Subagent", "🤖", tool="Task", relay_result=False),
)

NOTABLE_COMMAND = re.compile(r"^(npm|git|npx|node |tsc|next|python|pytest|pip|uv )")


def truncate(text: str, limit: int) -> str:
	return text[:limit] + ("..." if len(text) > limit else "")


def classify_record(line: str) -> AgentEvent:
	"""Classify one complete output line. Non-JSON lines become RAW_TEXT."""
	try:
		record = json.loads(line)
	except (json.JSONDecodeError, ValueError):
		return AgentEvent(kind=EventKind.RAW_TEXT, text=line, raw=line)

	if not isinstance(record, dict):
		return AgentEvent(kind=EventKind.RAW_TEXT, text=line, raw=line)

	record_type = record.get("type")

	if record_type == "system" and record.get("subtype") == "init":
		return AgentEvent(kind=EventKind.SESSION_START, model=record.get("model") or "claude", raw=line)

	if record_type == "assistant":
		content = (record.get("message") or {}).get("content")
		if not isinstance(content, list):
			return AgentEvent(kind=EventKind.IGNORED, raw=line)
		texts = [c.get("text", "") for c in content if isinstance(c, dict) and c.get("type") == "text"]
		tools = [
			ToolInvocation(name=c.get("name") or "tool", input=c.get("input") or {})
			for c in content
			if isinstance(c, dict) and c.get("type") == "tool_use"
		]
		text = "\n".join(texts).strip()
		if tools:
			return AgentEvent(kind=EventKind.TOOL_INVOCATION, text=text, tools=tools, raw=line)
		if text:
			return AgentEvent(kind=EventKind.ASSISTANT_TEXT, text=text, raw=line)
		return AgentEvent(kind=EventKind.IGNORED, raw=line)

	if record_type == "user" and record.get("tool_use_result"):
		result = record["tool_use_result"]
		output = ""
		if isinstance(result, dict):
			output = (result.get("stdout") or result.get("stderr") or "").strip()
		elif isinstance(result, str):
			output = result.strip()
		return AgentEvent(kind=EventKind.TOOL_RESULT, text=output, raw=line)

	if record_type == "result":
		result = record.get("result")
		text = result if isinstance(result, str) else json.dumps(result or "")
		return AgentEvent(
			kind=EventKind.FINAL_RESULT,
			text=text,
			cost=float(record.get("total_cost_usd") or 0.0),
			turns=int(record.get("num_turns") or 0),
			raw=line,
		)

	return AgentEvent(kind=EventKind.IGNORED, raw=line)


def classify_tool(
	tool: ToolInvocation,
	delegate_patterns: tuple[DelegatePattern, ...] = DEFAULT_DELEGATE_PATTERNS,
) -> tuple[str | None, DelegatePattern | None]:
	"""
	Decide how a tool invocation is reported.

	Returns:
		(visible status line or None, delegate now awaiting its result or None)
	"""
	for delegate in delegate_patterns:
		if delegate.matches(tool):
			if delegate.tool == "Task":
				desc = str(tool.input.get("description", ""))[:40]
				return f"{delegate.emoji} Subagent task: {desc}", delegate
			return f"{delegate.emoji} Leader → asking *{delegate.label}*", delegate

	if tool.name in ("Edit", "Write", "MultiEdit"):
		file_name = str(tool.input.get("file_path", "")).rsplit("/", 1)[-1]
		return f"📝 Editing file: {file_name}", None

	if tool.name == "Bash":
		command = str(tool.input.get("command", ""))
		if NOTABLE_COMMAND.match(command):
			return f"⚡ Running: {command[:50]}", None

	# Read, Grep, Glob and other exploration stays hidden
	return None, None


def format_final_result(event: AgentEvent) -> str:
	"""Header line for a final result, e.g. '✅ Leader finished: 4 turns ($0.012)'."""
	turns = f" {event.turns} turns" if event.turns else ""
	cost = f" (${event.cost:.3f})" if event.cost else ""
	return f"✅ *Leader finished*:{turns}{cost}"


AGENT_EMOJI = {
	"Claude": "👨‍✈️", "Leader": "👨‍✈️",
	"Researcher": "🔮", "Gemini": "🔮",
	"Strategist": "💡", "GPT": "💡",
	"Engineer": "🛠️", "Codex": "⚙️", "Tester": "🧪",
	"Designer": "🎨", "Planner": "📋",
}
DEFAULT_AGENT_EMOJI = "🤖"

_AGENT_MENTION = re.compile(r"@(\w+):")


def _format_mention(clean: str) -> str:
	agent = _AGENT_MENTION.search(clean).group(1)
	emoji = AGENT_EMOJI.get(agent, DEFAULT_AGENT_EMOJI)
	return f"{emoji} *@{agent}*: {_AGENT_MENTION.sub('', clean, count=1).strip()}"


# (matcher(clean, is_error), formatter(clean) -> line or None); first match wins
LineRule = tuple[Callable[[str, bool], bool], Callable[[str], str | None]]

LINE_RULES: list[LineRule] = [
	(lambda s, e: "Compiling" in s or "node_modules" in s, lambda s: None),
	(lambda s, e: len(s) < 3, lambda s: None),
	(lambda s, e: DECISION_MARKER in s, lambda s: f"🤔 {s}"),
	(lambda s, e: OPTIONS_MARKER in s, lambda s: None),
	(lambda s, e: "[Team Talk]" in s or "[Agent-to-Agent]" in s, lambda s: f"💬 {s}"),
	(lambda s, e: bool(_AGENT_MENTION.search(s)), _format_mention),
	(lambda s, e: "Phase:" in s or "단계:" in s or "Step " in s, lambda s: f"📋 {s[:100]}"),
	(lambda s, e: "thinking" in s or "분석" in s, lambda s: f"💭 {s}"),
	(lambda s, e: "Read" in s or "Edit" in s or "Write" in s, lambda s: f"📄 {s[:100]}"),
	(lambda s, e: e or "error" in s or "Error" in s, lambda s: f"⚠️ {s[:100]}"),
	(lambda s, e: "%" in s or "진행" in s, lambda s: f"📊 {s}"),
	(lambda s, e: len(s) > 10, lambda s: f"  {truncate(s, 80)}"),
]


def format_line(line: str, is_error: bool = False) -> str | None:
	"""Format a plain output line for the live relay, or None to hide it."""
	clean = strip_ansi(line)
	for matcher, formatter in LINE_RULES:
		if matcher(clean, is_error):
			return formatter(clean)
	return None


def describe(event: AgentEvent) -> str:
	"""Short debug description of an event."""
	if event.kind == EventKind.TOOL_INVOCATION:
		return f"{event.kind.value}: {', '.join(t.name for t in event.tools)}"
	return f"{event.kind.value}: {event.text[:60]}"
