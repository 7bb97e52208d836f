"""
Decision detection - finds points in agent output where a human must decide.

Provides:
- Marker and natural-language question detection
- Latching of a [DECISION NEEDED] line until its [OPTIONS] line arrives
- Pending question store
- Hand-off files shared with the running agent (question/response/history)
"""

import itertools
import json
import logging
import re
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

ANSI_ESCAPE = re.compile(r"\x1B\[[0-9;]*m")
DECISION_MARKER = "[DECISION NEEDED]"
OPTIONS_MARKER = "[OPTIONS]"
OPTION_SEPARATOR = "|"

_DECISION_RE = re.compile(r"\[DECISION NEEDED\]\s*(.+)")
_OPTIONS_RE = re.compile(r"\[OPTIONS\]\s*(.+)")

# Fallback heuristics - these never yield options
NATURAL_QUESTION_PATTERNS = [
	re.compile(r"should I (.+)\?", re.IGNORECASE),
	re.compile(r"which (?:one|option) (.+)\?", re.IGNORECASE),
	re.compile(r"do you (?:want|prefer) (.+)\?", re.IGNORECASE),
	re.compile(r"어떤 것을 (.+)\?"),
	re.compile(r"(.+)로 할까요\?"),
	re.compile(r"(.+) 중에 어떤"),
]

_id_counter = itertools.count(1)


def new_question_id() -> str:
	"""Generate a question id: q-<epoch ms>-<sequence>."""
	return f"q-{int(time.time() * 1000)}-{next(_id_counter)}"


def strip_ansi(text: str) -> str:
	return ANSI_ESCAPE.sub("", text)


def parse_options(raw: str) -> list[str]:
	"""Split an options string on the separator, dropping empty entries."""
	return [opt.strip() for opt in raw.split(OPTION_SEPARATOR) if opt.strip()]


class QuestionStatus(str, Enum):
	"""Status of a detected question."""
	PENDING = "pending"
	ANSWERED = "answered"


@dataclass
class DecisionCandidate:
	"""A question found in a single line of output."""
	id: str
	question: str
	options: list[str] = field(default_factory=list)
	explicit: bool = False


@dataclass
class PendingQuestion:
	"""A question that was relayed to the user."""
	id: str
	question: str
	options: list[str]
	status: QuestionStatus = QuestionStatus.PENDING
	timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
	answer: str | None = None
	answered_at: str | None = None

	def to_dict(self) -> dict:
		data = asdict(self)
		data["status"] = self.status.value
		return data


class DecisionDetector:
	"""Stateless line scanner for decision points."""

	def detect(self, line: str) -> DecisionCandidate | None:
		"""
		Detect a question in one line of output.

		The explicit marker wins over the heuristics. Options may be given
		inline after an [OPTIONS] marker; otherwise the candidate has none.
		"""
		clean = strip_ansi(line).strip()

		match = _DECISION_RE.search(clean)
		if match:
			body = match.group(1)
			options: list[str] = []
			if OPTIONS_MARKER in body:
				body, raw_options = body.split(OPTIONS_MARKER, 1)
				options = parse_options(raw_options)
			question = body.strip()
			if not question:
				return None
			return DecisionCandidate(
				id=new_question_id(),
				question=question,
				options=options,
				explicit=True,
			)

		for pattern in NATURAL_QUESTION_PATTERNS:
			if pattern.search(clean):
				return DecisionCandidate(id=new_question_id(), question=clean)

		return None

	def detect_options(self, line: str) -> list[str] | None:
		"""Parse a standalone [OPTIONS] line."""
		match = _OPTIONS_RE.search(strip_ansi(line).strip())
		if match:
			return parse_options(match.group(1))
		return None


class DecisionTracker:
	"""
	Per-run latching state around a DecisionDetector.

	A marker without inline options is held until the next line. If that
	line carries [OPTIONS] the question is finalized with whatever options
	it parses to (possibly none); any other line finalizes it with no
	options and is then scanned on its own.
	"""

	def __init__(self, detector: DecisionDetector | None = None):
		self.detector = detector or DecisionDetector()
		self._latched: DecisionCandidate | None = None

	@property
	def latched(self) -> DecisionCandidate | None:
		return self._latched

	def feed(self, text: str) -> list[DecisionCandidate]:
		"""Feed one or more lines, returning questions that are now final."""
		finalized: list[DecisionCandidate] = []
		for line in text.splitlines() or [text]:
			finalized.extend(self._feed_line(line))
		return finalized

	def _feed_line(self, line: str) -> list[DecisionCandidate]:
		finalized: list[DecisionCandidate] = []

		if self._latched is not None:
			finalized.append(self._latched)
			self._latched = None
			if OPTIONS_MARKER in line:
				# An options line that parses to nothing still ends the question
				finalized[-1].options = self.detector.detect_options(line) or []
				return finalized

		candidate = self.detector.detect(line)
		if candidate is None:
			return finalized

		if candidate.explicit and not candidate.options:
			if self._latched is not None:
				finalized.append(self._latched)
			self._latched = candidate
		else:
			finalized.append(candidate)
		return finalized

	def flush(self) -> list[DecisionCandidate]:
		"""Finalize a question still latched at end of stream."""
		if self._latched is None:
			return []
		candidate, self._latched = self._latched, None
		return [candidate]


class QuestionStore:
	"""Registry of questions relayed to the user. Entries are never deleted."""

	def __init__(self):
		self._questions: dict[str, PendingQuestion] = {}

	def add_question(self, candidate: DecisionCandidate) -> PendingQuestion:
		question = PendingQuestion(
			id=candidate.id,
			question=candidate.question,
			options=list(candidate.options),
		)
		self._questions[question.id] = question
		logger.info(f"Question {question.id} pending: {question.question[:80]}")
		return question

	def get_question(self, question_id: str) -> PendingQuestion | None:
		return self._questions.get(question_id)

	def get_pending_questions(self) -> list[PendingQuestion]:
		"""Pending questions in insertion order."""
		return [q for q in self._questions.values() if q.status == QuestionStatus.PENDING]

	def latest_pending(self) -> PendingQuestion | None:
		pending = self.get_pending_questions()
		return pending[-1] if pending else None

	def resolve_question(self, question_id: str, answer: str) -> bool:
		"""
		Mark a question answered.

		Unknown ids and already answered questions are left untouched.

		Returns:
			True if the question transitioned to answered
		"""
		question = self._questions.get(question_id)
		if question is None or question.status != QuestionStatus.PENDING:
			return False
		question.status = QuestionStatus.ANSWERED
		question.answer = answer
		question.answered_at = datetime.now().isoformat()
		return True

	def __len__(self) -> int:
		return len(self._questions)


class HandoffFiles:
	"""
	Files passing a human decision into the running agent.

	question.json is written when a question is relayed; response.json is
	written once the user answers and is picked up by the agent's stop hook
	(see consume_response). history.jsonl keeps every answered pair.
	"""

	def __init__(self, decisions_dir: str | Path):
		self.dir = Path(decisions_dir)
		self.question_file = self.dir / "question.json"
		self.response_file = self.dir / "response.json"
		self.history_file = self.dir / "history.jsonl"

	def write_question(self, question: PendingQuestion) -> None:
		self.dir.mkdir(parents=True, exist_ok=True)
		payload = {
			"id": question.id,
			"question": question.question,
			"options": question.options,
			"timestamp": question.timestamp,
			"status": QuestionStatus.PENDING.value,
		}
		self.question_file.write_text(json.dumps(payload, indent=2, ensure_ascii=False))

	def write_response(self, question_id: str, answer: str) -> None:
		self.dir.mkdir(parents=True, exist_ok=True)
		payload = {
			"id": question_id,
			"answer": answer,
			"timestamp": datetime.now().isoformat(),
		}
		self.response_file.write_text(json.dumps(payload, indent=2, ensure_ascii=False))

	def clear(self) -> None:
		"""Remove stale question/response files."""
		for path in (self.response_file, self.question_file):
			path.unlink(missing_ok=True)

	def append_history(self, entry: dict) -> None:
		self.dir.mkdir(parents=True, exist_ok=True)
		with open(self.history_file, "a", encoding="utf-8") as f:
			f.write(json.dumps(entry, ensure_ascii=False) + "\n")

	def read_history(self, limit: int = 10) -> list[dict]:
		"""Return the last `limit` well-formed history entries."""
		if not self.history_file.exists():
			return []
		entries = []
		for line in self.history_file.read_text(encoding="utf-8").splitlines()[-limit:]:
			try:
				entries.append(json.loads(line))
			except json.JSONDecodeError:
				continue
		return entries

	def consume_response(self) -> dict | None:
		"""
		Stop-hook side of the hand-off.

		Reads and deletes response.json (and question.json), records the pair
		in history, and returns the hook decision that injects the answer into
		the agent's next turn. Returns None when there is nothing to inject.
		"""
		if not self.response_file.exists():
			return None

		try:
			response = json.loads(self.response_file.read_text(encoding="utf-8"))
		except (OSError, json.JSONDecodeError):
			self.response_file.unlink(missing_ok=True)
			return None

		if not isinstance(response, dict) or not response.get("answer"):
			return None

		question = None
		if self.question_file.exists():
			try:
				question = json.loads(self.question_file.read_text(encoding="utf-8"))
			except (OSError, json.JSONDecodeError):
				question = None
		question_text = (question or {}).get("question") or "(unknown)"

		self.append_history({
			"timestamp": datetime.now().isoformat(),
			"question_id": response.get("id") or (question or {}).get("id") or "unknown",
			"question": question_text,
			"answer": response["answer"],
			"answered_at": response.get("timestamp") or datetime.now().isoformat(),
		})

		self.clear()

		reason = "\n".join([
			"[TELEGRAM USER DECISION]",
			f"Question: {question_text}",
			f"User answer: {response['answer']}",
			"",
			"Continue the work applying the user's decision above.",
		])
		return {"decision": "block", "reason": reason}
