"""Task complexity classifier - maps a task description to a round budget."""

import re
from dataclasses import dataclass
from enum import Enum


class ComplexityLabel(str, Enum):
	SIMPLE = "simple"                    # 1 round: execute directly
	MODERATE = "moderate"                # 2 rounds: opinions + execute
	COMPLEX = "complex"                  # 3 rounds: opinions + draft + critique
	FULL_DISCUSSION = "full discussion"  # 4 rounds


@dataclass(frozen=True)
class ComplexityResult:
	rounds: int
	label: ComplexityLabel
	score: int


def _patterns(*sources: str, flags: int = re.IGNORECASE) -> tuple[re.Pattern, ...]:
	return tuple(re.compile(s, flags) for s in sources)


class ComplexityClassifier:
	"""
	Scores a task description with keyword families.

	Each family contributes at most once. The score is clamped to
	[MIN_SCORE, MAX_SCORE] and then bucketed into a round count.
	"""

	MIN_SCORE = 0
	MAX_SCORE = 6

	LONG_TEXT_CHARS = 200
	MEDIUM_TEXT_CHARS = 80

	MULTI_FILE = _patterns(
		r"여러\s*파일", r"multiple\s*files", r"전체", r"리팩토링", r"refactor",
		r"아키텍처", r"architecture", r"시스템", r"system\s+design",
		r"마이그레이션", r"migration",
	)
	RESEARCH = _patterns(
		r"최신", r"latest", r"2025", r"2026", r"버전", r"version", r"라이브러리",
		r"library", r"패키지", r"package", r"api", r"sdk",
	)
	STRATEGY = _patterns(
		r"ux", r"ui", r"디자인", r"design", r"사용자", r"user", r"기획", r"전략",
		r"strategy", r"플로우", r"flow", r"어떻게", r"how\s+should",
	)
	COMPLEX_DOMAIN = _patterns(
		r"인증", r"auth", r"결제", r"payment", r"보안", r"security", r"성능",
		r"performance", r"최적화", r"optimiz", r"데이터베이스", r"database",
	)
	TRIVIAL = _patterns(
		r"색상", r"color", r"오타", r"typo", r"간단", r"simple", r"빠르게",
		r"quick", r"텍스트\s*변경", r"주석",
	)

	# (family, weight)
	SIGNALS = (
		(MULTI_FILE, 2),
		(RESEARCH, 1),
		(STRATEGY, 1),
		(COMPLEX_DOMAIN, 1),
		(TRIVIAL, -2),
	)

	def score(self, text: str) -> int:
		"""Raw clamped score for a task description."""
		score = 0
		if len(text) > self.LONG_TEXT_CHARS:
			score += 2
		elif len(text) > self.MEDIUM_TEXT_CHARS:
			score += 1

		for family, weight in self.SIGNALS:
			if any(p.search(text) for p in family):
				score += weight

		return max(self.MIN_SCORE, min(self.MAX_SCORE, score))

	def classify(self, text: str) -> ComplexityResult:
		score = self.score(text)
		if score <= 1:
			return ComplexityResult(1, ComplexityLabel.SIMPLE, score)
		if score <= 3:
			return ComplexityResult(2, ComplexityLabel.MODERATE, score)
		if score <= 4:
			return ComplexityResult(3, ComplexityLabel.COMPLEX, score)
		return ComplexityResult(4, ComplexityLabel.FULL_DISCUSSION, score)


_classifier = ComplexityClassifier()


def classify_complexity(text: str) -> ComplexityResult:
	"""Classify with the shared default classifier."""
	return _classifier.classify(text)
