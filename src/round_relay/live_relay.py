"""
Live relay message - one Telegram message edited in place while an agent runs.

Lines are buffered and edits are coalesced: a flush happens only when the
update interval has elapsed and no other flush is in flight.
"""

import logging
import time
from typing import Any, Callable

from telegram.constants import ParseMode
from telegram.error import BadRequest, TelegramError

logger = logging.getLogger(__name__)

SEPARATOR = "━━━━━━━━━━━━━━━"
ELLIPSIS = "..."
TELEGRAM_MAX_CHARS = 4000


def should_flush(now: float, last_update: float, in_flight: bool, interval: float) -> bool:
	"""Flush gate: interval elapsed since the last flush and none in flight."""
	return not in_flight and (now - last_update) >= interval


class LiveRelayMessage:
	"""Rate-limited status message for a single agent run."""

	def __init__(
		self,
		bot: Any,
		chat_id: int | str,
		max_lines: int = 30,
		update_interval: float = 0.5,
		max_chars: int = TELEGRAM_MAX_CHARS,
		clock: Callable[[], float] = time.monotonic,
	):
		self.bot = bot
		self.chat_id = chat_id
		self.max_lines = max_lines
		self.update_interval = update_interval
		self.max_chars = max_chars
		self._clock = clock

		self.message_id: int | None = None
		self.lines: list[str] = []
		self.last_update = float("-inf")
		self.in_flight = False
		self.flush_count = 0

	async def init(self, title: str) -> "LiveRelayMessage":
		"""Send the initial message and seed the two-line header."""
		header = f"📡 *{title}*"
		msg = await self.bot.send_message(
			chat_id=self.chat_id,
			text=f"{header}\n{SEPARATOR}\n⏱️ Starting...",
			parse_mode=ParseMode.MARKDOWN,
		)
		self.message_id = msg.message_id
		self.lines = [header, SEPARATOR]
		return self

	async def add_line(self, line: str) -> None:
		self.lines.append(line)

		if len(self.lines) > self.max_lines + 2:
			self.lines = [self.lines[0], self.lines[1], ELLIPSIS, *self.lines[-self.max_lines:]]

		if should_flush(self._clock(), self.last_update, self.in_flight, self.update_interval):
			self.in_flight = True
			try:
				await self.flush()
			finally:
				self.in_flight = False

	async def flush(self) -> None:
		"""Edit the remote message with the current buffer. Never raises."""
		if self.message_id is None:
			return
		content = "\n".join(self.lines)[: self.max_chars]
		try:
			await self._edit(content)
			self.last_update = self._clock()
			self.flush_count += 1
		except Exception as e:
			# Unchanged content, rate limits, flaky network: next flush retries
			logger.debug(f"Live relay edit skipped: {e}")

	async def _edit(self, content: str) -> None:
		try:
			await self.bot.edit_message_text(
				text=content,
				chat_id=self.chat_id,
				message_id=self.message_id,
				parse_mode=ParseMode.MARKDOWN,
			)
		except BadRequest as e:
			if "not modified" in str(e).lower():
				raise
			# Agent output frequently breaks Markdown entities; retry as plain text
			await self.bot.edit_message_text(
				text=content.replace("*", ""),
				chat_id=self.chat_id,
				message_id=self.message_id,
			)

	async def finalize(self, summary: str) -> None:
		"""Append the summary and force a final flush."""
		self.lines.append(SEPARATOR)
		self.lines.append(summary)
		await self.flush()


def split_message(text: str, max_len: int = TELEGRAM_MAX_CHARS) -> list[str]:
	"""Split text on line boundaries into chunks of at most max_len chars."""
	chunks: list[str] = []
	current = ""
	for line in text.split("\n"):
		while len(line) > max_len:
			if current:
				chunks.append(current)
				current = ""
			chunks.append(line[:max_len])
			line = line[max_len:]
		candidate = f"{current}\n{line}" if current else line
		if len(candidate) > max_len and current:
			chunks.append(current)
			current = line
		else:
			current = candidate
	if current:
		chunks.append(current)
	return chunks


async def send_long_message(
	bot: Any,
	chat_id: int | str,
	text: str,
	max_len: int = TELEGRAM_MAX_CHARS,
	parse_mode: str | None = None,
) -> None:
	"""Send text as one or more messages, numbering the parts when split."""
	if not text:
		return
	chunks = split_message(text, max_len)
	for i, chunk in enumerate(chunks, 1):
		header = f"({i}/{len(chunks)})\n" if len(chunks) > 1 else ""
		try:
			await bot.send_message(chat_id=chat_id, text=header + chunk, parse_mode=parse_mode)
		except BadRequest as e:
			if parse_mode is None:
				logger.warning(f"Failed to send message part {i}/{len(chunks)}: {e}")
				continue
			# Retry without markdown
			await bot.send_message(chat_id=chat_id, text=header + chunk)
		except TelegramError as e:
			logger.warning(f"Failed to send message part {i}/{len(chunks)}: {e}")
