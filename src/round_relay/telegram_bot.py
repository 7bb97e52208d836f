"""
Telegram front end for round-relay.

Full remote control of the agent from one chat:
- Round discussions (/run, /discuss, /ralph, /swarm, /analyze)
- Decision relay with inline buttons and /reply
- Project housekeeping (/status, /build, /deploy)

Updates are fetched with a manual long-poll loop (UpdatePoller) and routed
through an ordered list of text patterns (Dispatcher).
"""

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Optional

from telegram import Bot, CallbackQuery, InlineKeyboardButton, InlineKeyboardMarkup, Message, Update
from telegram.constants import ParseMode
from telegram.error import BadRequest, TelegramError

from .config import Config, get_config
from .decisions import HandoffFiles, PendingQuestion, QuestionStore, new_question_id
from .live_relay import LiveRelayMessage
from .orchestrator import MAX_ROUNDS, RoundDiscussion, SessionRegistry
from . import prompts

logger = logging.getLogger(__name__)

TextHandler = Callable[[Message, re.Match], Awaitable[None]]
MessageHandler = Callable[[Message], Awaitable[None]]
CallbackHandler = Callable[[CallbackQuery], Awaitable[None]]

CALLBACK_PREFIX = "decision"
CUSTOM_OPTION = "custom"
SHELL_TIMEOUT = 180.0


def command(name: str, args: str = "") -> re.Pattern:
	"""Pattern for `/name[@bot] args`."""
	return re.compile(rf"^/{name}(?:@\w+)?(?![\w@]){args}", re.DOTALL)


class Dispatcher:
	"""
	Routes updates to handlers.

	Text rules are evaluated in registration order and the first match
	wins. Messages no rule matches go to the general message handler.
	"""

	def __init__(self):
		self.rules: list[tuple[re.Pattern, TextHandler]] = []
		self.message_handler: MessageHandler | None = None
		self.callback_handler: CallbackHandler | None = None

	def on_text(self, pattern: re.Pattern | str, handler: TextHandler) -> None:
		if isinstance(pattern, str):
			pattern = re.compile(pattern, re.DOTALL)
		self.rules.append((pattern, handler))

	def on_message(self, handler: MessageHandler) -> None:
		self.message_handler = handler

	def on_callback(self, handler: CallbackHandler) -> None:
		self.callback_handler = handler

	def match(self, text: str) -> tuple[TextHandler, re.Match] | None:
		for pattern, handler in self.rules:
			m = pattern.match(text)
			if m:
				return handler, m
		return None

	async def dispatch(self, update: Update) -> None:
		message = update.message
		if message is not None and message.text is not None:
			found = self.match(message.text)
			if found:
				handler, m = found
				await handler(message, m)
			elif self.message_handler:
				await self.message_handler(message)

		if update.callback_query is not None and self.callback_handler:
			await self.callback_handler(update.callback_query)


class UpdatePoller:
	"""
	Sequential long-poll loop over getUpdates.

	The offset is advanced before each update is handled, so a failing
	handler never causes redelivery.
	"""

	def __init__(self, bot: Any, dispatcher: Dispatcher, poll_timeout: int = 30, retry_delay: float = 3.0):
		self.bot = bot
		self.dispatcher = dispatcher
		self.poll_timeout = poll_timeout
		self.retry_delay = retry_delay
		self.offset = 0
		self._running = False

	async def seed(self) -> None:
		"""Skip the backlog: start after the most recent pending update."""
		try:
			updates = await self.bot.get_updates(offset=-1, timeout=0)
		except TelegramError as e:
			logger.warning(f"Could not seed update offset: {e}")
			return
		if updates:
			self.offset = updates[-1].update_id + 1
		logger.info(f"Polling from offset {self.offset}")

	async def poll_once(self) -> int:
		"""
		Fetch and dispatch one batch.

		Returns:
			Number of updates received

		Raises:
			TelegramError: If the fetch itself failed
		"""
		updates = await self.bot.get_updates(
			offset=self.offset,
			timeout=self.poll_timeout,
			allowed_updates=["message", "callback_query"],
		)
		for update in updates:
			self.offset = update.update_id + 1
			try:
				await self.dispatcher.dispatch(update)
			except Exception:
				logger.exception(f"Handler failed for update {update.update_id}")
		return len(updates)

	async def run_forever(self) -> None:
		self._running = True
		await self.seed()
		while self._running:
			try:
				await self.poll_once()
			except asyncio.CancelledError:
				raise
			except Exception as e:
				logger.warning(f"Polling error: {e}")
				await asyncio.sleep(self.retry_delay)

	def stop(self) -> None:
		self._running = False


def decision_keyboard(question: PendingQuestion) -> InlineKeyboardMarkup:
	"""Options two per row, then a custom-answer button."""
	rows = []
	for i in range(0, len(question.options), 2):
		rows.append([
			InlineKeyboardButton(option, callback_data=f"{CALLBACK_PREFIX}:{question.id}:{j}")
			for j, option in enumerate(question.options[i:i + 2], start=i)
		])
	rows.append([
		InlineKeyboardButton("✏️ Custom answer (/reply)", callback_data=f"{CALLBACK_PREFIX}:{question.id}:{CUSTOM_OPTION}")
	])
	return InlineKeyboardMarkup(rows)


async def run_shell(args: list[str] | str, cwd: str, timeout: float = SHELL_TIMEOUT) -> tuple[int, str, str]:
	"""Run a command, returning (exit code, stdout, stderr). Timeouts kill the process."""
	if isinstance(args, str):
		proc = await asyncio.create_subprocess_shell(
			args, cwd=cwd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE,
		)
	else:
		proc = await asyncio.create_subprocess_exec(
			*args, cwd=cwd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE,
		)
	try:
		stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
	except asyncio.TimeoutError:
		proc.kill()
		await proc.wait()
		return -1, "", f"Timed out after {int(timeout)}s"
	return proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")


class RelayBot:
	"""
	Telegram bot driving round discussions.

	Commands:
		/run <task> - Round discussion, rounds chosen by complexity
		/discuss [N] <task> - Round discussion, optionally forcing N rounds
		/ralph <task> - Run until done (ralph mode)
		/swarm <task> - Parallel agents (ultrapilot mode)
		/analyze <target> - Analyse and propose improvements
		/reply <answer> - Answer the latest question
		/decisions - Pending questions
		/history - Recent answered questions
		/stop - Stop the running session
		/status - Project status
		/build - Run the build
		/deploy [message] - Commit and push
		/mychatid - Show this chat's id

	Messages:
		Plain text during a session answers the latest pending question.
	"""

	def __init__(
		self,
		bot: Any,
		config: Optional[Config] = None,
		questions: Optional[QuestionStore] = None,
		handoff: Optional[HandoffFiles] = None,
		discussion: Optional[RoundDiscussion] = None,
	):
		self.bot = bot
		self.config = config or get_config()
		self.questions = questions if questions is not None else QuestionStore()
		self.handoff = handoff or HandoffFiles(self.config.decisions_dir)
		self.discussion = discussion or RoundDiscussion(
			bot,
			self.questions,
			self.handoff,
			registry=SessionRegistry(),
			config=self.config,
			on_decision=self.send_decision,
		)
		self.dispatcher = Dispatcher()
		self._tasks: set[asyncio.Task] = set()
		self._register()

	def _register(self) -> None:
		d = self.dispatcher
		d.on_text(command("start"), self._cmd_start)
		d.on_text(command("mychatid"), self._cmd_mychatid)
		d.on_text(command("run", r"\s+(.+)"), self._cmd_run)
		d.on_text(command("ralph", r"\s+(.+)"), self._cmd_ralph)
		d.on_text(command("swarm", r"\s+(.+)"), self._cmd_swarm)
		d.on_text(command("discuss", r"\s+(\d+)\s+(.+)"), self._cmd_discuss_rounds)
		d.on_text(command("discuss", r"\s+(\D.*)"), self._cmd_discuss)
		d.on_text(command("analyze", r"\s+(.+)"), self._cmd_analyze)
		d.on_text(command("reply", r"\s+(.+)"), self._cmd_reply)
		d.on_text(command("decisions"), self._cmd_decisions)
		d.on_text(command("history"), self._cmd_history)
		d.on_text(command("stop"), self._cmd_stop)
		d.on_text(command("status"), self._cmd_status)
		d.on_text(command("build"), self._cmd_build)
		d.on_text(command("deploy", r"(.*)"), self._cmd_deploy)
		d.on_message(self._handle_message)
		d.on_callback(self._handle_callback)

	# ==================== Helpers ====================

	async def _reply(self, message: Message, text: str, markdown: bool = False) -> None:
		try:
			await self.bot.send_message(
				chat_id=message.chat_id,
				text=text,
				parse_mode=ParseMode.MARKDOWN if markdown else None,
			)
		except BadRequest:
			if not markdown:
				raise
			# Retry without markdown
			await self.bot.send_message(chat_id=message.chat_id, text=text)

	def _spawn(self, coro: Awaitable) -> asyncio.Task:
		"""Run a long handler in the background so polling continues."""
		task = asyncio.ensure_future(coro)
		self._tasks.add(task)
		task.add_done_callback(self._tasks.discard)
		return task

	def _start_discussion(self, message: Message, task: str, mode: str, rounds: int | None = None) -> asyncio.Task:
		logger.info(f"Chat {message.chat_id}: {mode} ({rounds or 'auto'} rounds) {task[:80]}")
		return self._spawn(self.discussion.run(message.chat_id, message.chat_id, task, mode, rounds))

	def _answer(self, question_id: str, answer: str) -> bool:
		"""Resolve a question and hand the answer over. Repeats are ignored."""
		if not self.questions.resolve_question(question_id, answer):
			return False
		self.handoff.write_response(question_id, answer)
		return True

	async def send_decision(self, chat_id: Any, question: PendingQuestion) -> None:
		"""Relay a detected decision point with its option buttons."""
		hint = (
			"Tap a button or send `/reply <answer>`."
			if question.options
			else "Answer with `/reply <answer>`."
		)
		text = "\n".join(["❓ *The agent needs a decision*", "", question.question, "", hint])
		try:
			await self.bot.send_message(
				chat_id=chat_id,
				text=text,
				parse_mode=ParseMode.MARKDOWN,
				reply_markup=decision_keyboard(question),
			)
		except BadRequest:
			await self.bot.send_message(chat_id=chat_id, text=text, reply_markup=decision_keyboard(question))

	# ==================== Command Handlers ====================

	async def _cmd_start(self, message: Message, match: re.Match) -> None:
		await self._reply(message, "\n".join([
			"📡 *Agent relay*",
			"",
			"Remote control for autonomous agent work with live progress.",
			"",
			f"🔑 *Chat ID:* `{message.chat_id}`",
			"",
			"📋 *Work*",
			"`/run task` - round discussion + execution",
			"`/discuss task` - team discussion (auto rounds)",
			"`/discuss N task` - force N rounds",
			"`/ralph task` - repeat until done",
			"`/swarm task` - parallel agents",
			"`/analyze target` - analyse the project",
			"",
			"💬 *Answers*",
			"`/reply answer` - answer the agent's question",
			"`/decisions` - pending questions",
			"`/history` - answered questions",
			"",
			"🛠️ *Project*",
			"`/stop` - stop the running work",
			"`/status` - project status",
			"`/build` - run the build",
			"`/deploy message` - commit and push",
		]), markdown=True)

	async def _cmd_mychatid(self, message: Message, match: re.Match) -> None:
		await self._reply(message, f"🔑 *Chat ID:* `{message.chat_id}`", markdown=True)

	async def _cmd_run(self, message: Message, match: re.Match) -> None:
		self._start_discussion(message, match.group(1).strip(), "autopilot")

	async def _cmd_ralph(self, message: Message, match: re.Match) -> None:
		self._start_discussion(message, match.group(1).strip(), "ralph")

	async def _cmd_swarm(self, message: Message, match: re.Match) -> None:
		self._start_discussion(message, match.group(1).strip(), "ultrapilot")

	async def _cmd_discuss_rounds(self, message: Message, match: re.Match) -> None:
		rounds = min(MAX_ROUNDS, max(1, int(match.group(1))))
		self._start_discussion(message, match.group(2).strip(), "autopilot", rounds)

	async def _cmd_discuss(self, message: Message, match: re.Match) -> None:
		self._start_discussion(message, match.group(1).strip(), "autopilot")

	async def _cmd_analyze(self, message: Message, match: re.Match) -> None:
		self._start_discussion(message, prompts.analyze(match.group(1).strip()), "autopilot")

	async def _cmd_reply(self, message: Message, match: re.Match) -> None:
		answer = match.group(1).strip()
		latest = self.questions.latest_pending()
		if latest is None:
			# No pending question: pass it on as a free response
			self.handoff.write_response(f"reply-{new_question_id()}", answer)
			await self._reply(message, f"✅ Response sent: \"{answer}\"")
			return

		self._answer(latest.id, answer)
		await self._reply(message, "\n".join([
			"✅ Response sent",
			"",
			f"Question: {latest.question}",
			f"Answer: *{answer}*",
		]), markdown=True)

	async def _cmd_decisions(self, message: Message, match: re.Match) -> None:
		pending = self.questions.get_pending_questions()
		if not pending:
			await self._reply(message, "📭 No pending questions.")
			return

		lines = [f"❓ *Pending questions ({len(pending)})*", ""]
		for i, q in enumerate(pending, 1):
			lines.append(f"{i}. {q.question}")
			if q.options:
				lines.append(f"  Options: {', '.join(q.options)}")
		lines += ["", "`/reply answer` answers the most recent one."]
		await self._reply(message, "\n".join(lines), markdown=True)

	async def _cmd_history(self, message: Message, match: re.Match) -> None:
		try:
			entries = self.handoff.read_history(limit=10)
		except OSError as e:
			logger.warning(f"Could not read decision history: {e}")
			await self._reply(message, "❌ Could not read the history.")
			return

		if not entries:
			await self._reply(message, "📭 No answered questions yet.")
			return

		lines = ["📋 *Recent questions and answers*", ""]
		for i, entry in enumerate(entries, 1):
			lines.append(f"{i}. Q: {entry.get('question', '?')}\nA: {entry.get('answer', '?')}")
		await self._reply(message, "\n".join(lines), markdown=True)

	async def _cmd_stop(self, message: Message, match: re.Match) -> None:
		if self.discussion.cancel(message.chat_id):
			await self._reply(message, "⏹️ Work stopped.")
		else:
			await self._reply(message, "Nothing is running.")

	async def _cmd_status(self, message: Message, match: re.Match) -> None:
		cwd = str(self.config.project_path)
		_, git_log, _ = await run_shell(["git", "log", "--oneline", "-3"], cwd, timeout=30)
		_, git_status, _ = await run_shell(["git", "status", "--short"], cwd, timeout=30)
		active = self.discussion.is_active(message.chat_id)

		await self._reply(message, "\n".join([
			"👨‍✈️ *Project status*",
			"",
			f"📁 `{cwd}`",
			f"🤖 Session: {'✅ running' if active else '⏸️ idle'}",
			f"❓ Pending questions: {len(self.questions.get_pending_questions())}",
			"",
			"📝 *Recent commits:*",
			"```",
			git_log.strip() or "none",
			"```",
			"",
			"📋 *Changes:*",
			"```",
			git_status.strip() or "none (clean)",
			"```",
		]), markdown=True)

	async def _cmd_build(self, message: Message, match: re.Match) -> None:
		self._spawn(self._build(message.chat_id))

	async def _build(self, chat_id: Any) -> None:
		live = LiveRelayMessage(self.bot, chat_id)
		await live.init("Build")
		await live.add_line(f"⏱️ {self.config.build_command} running...")
		try:
			code, stdout, stderr = await run_shell(self.config.build_command, str(self.config.project_path))
		except OSError as e:
			await live.finalize(f"❌ Build failed: {str(e)[:500]}")
			return
		if code != 0:
			await live.finalize(f"❌ Build failed (exit: {code})\n```\n{(stderr or stdout)[-500:]}\n```")
			return
		await live.add_line("✅ Build finished")
		await live.finalize(f"```\n{(stdout or stderr)[:1000]}\n```")

	async def _cmd_deploy(self, message: Message, match: re.Match) -> None:
		commit_msg = match.group(1).strip() or "Update"
		self._spawn(self._deploy(message.chat_id, commit_msg))

	async def _deploy(self, chat_id: Any, commit_msg: str) -> None:
		cwd = str(self.config.project_path)
		branch = self.config.deploy_branch
		live = LiveRelayMessage(self.bot, chat_id)
		await live.init("Deploy")
		try:
			await live.add_line("📦 git add -A")
			code, _, stderr = await run_shell(["git", "add", "-A"], cwd)
			if code != 0:
				await live.finalize(f"❌ Deploy failed: {stderr[:200]}")
				return

			await live.add_line(f"📝 git commit -m \"{commit_msg}\"")
			code, stdout, stderr = await run_shell(["git", "commit", "-m", commit_msg], cwd)
			if "nothing to commit" in stdout + stderr:
				await live.finalize("📝 No changes")
				return
			if code != 0:
				await live.finalize(f"❌ Deploy failed: {stderr[:200]}")
				return

			await live.add_line(f"🚀 git push origin {branch}")
			code, _, stderr = await run_shell(["git", "push", "origin", branch], cwd)
			if code != 0:
				await live.finalize(f"❌ Deploy failed: {stderr[:200]}")
				return
		except OSError as e:
			await live.finalize(f"❌ Deploy failed: {str(e)[:200]}")
			return

		await live.finalize("✅ Deployed")

	# ==================== Message Handlers ====================

	async def _handle_message(self, message: Message) -> None:
		"""Plain text: an answer while a session runs, otherwise a usage hint."""
		text = message.text
		if text.startswith("/"):
			return

		if self.discussion.is_active(message.chat_id):
			latest = self.questions.latest_pending()
			if latest is not None:
				self._answer(latest.id, text)
				await self._reply(message, f"✅ \"{text}\" → passed to the agent.")
				return
			self.handoff.write_response(f"msg-{new_question_id()}", text)
			await self._reply(message, f"💬 \"{text}\" → passed to the agent.")
			return

		await self._reply(message, "\n".join([
			"💡 Available commands:",
			"`/run task` - run the agent",
			"`/ralph task` - repeat until done",
			"`/reply answer` - answer a question",
			"`/stop` - stop",
		]), markdown=True)

	async def _handle_callback(self, query: CallbackQuery) -> None:
		"""Inline decision buttons: `decision:<question id>:<option index|custom>`."""
		parts = (query.data or "").split(":")
		if len(parts) != 3 or parts[0] != CALLBACK_PREFIX:
			await self.bot.answer_callback_query(query.id)
			return

		_, question_id, choice = parts
		question = self.questions.get_question(question_id)
		if question is None:
			await self.bot.answer_callback_query(query.id, text="This question has expired.")
			return

		if choice == CUSTOM_OPTION:
			await self.bot.answer_callback_query(query.id, text="Send your answer with /reply.")
			return

		try:
			answer = question.options[int(choice)]
		except (ValueError, IndexError):
			await self.bot.answer_callback_query(query.id, text="Invalid option.")
			return

		if not self._answer(question_id, answer):
			await self.bot.answer_callback_query(query.id, text="This question was already answered.")
			return
		await self.bot.answer_callback_query(query.id, text=f"✅ \"{answer}\" selected")

		if query.message is None:
			return
		try:
			await self.bot.edit_message_text(
				text=f"✅ *Decided*\n\n{question.question}\n\n→ *{answer}*",
				chat_id=query.message.chat_id,
				message_id=query.message.message_id,
				parse_mode=ParseMode.MARKDOWN,
			)
		except TelegramError as e:
			logger.debug(f"Decision message edit skipped: {e}")

	# ==================== Lifecycle ====================

	async def shutdown(self) -> None:
		"""Cancel background work."""
		for task in list(self._tasks):
			task.cancel()
		if self._tasks:
			await asyncio.gather(*self._tasks, return_exceptions=True)


async def serve(config: Optional[Config] = None) -> None:
	"""Run the bot until cancelled."""
	config = config or get_config()
	if not config.telegram_token:
		raise ValueError("TELEGRAM_BOT_TOKEN is not set")

	async with Bot(config.telegram_token) as bot:
		relay_bot = RelayBot(bot, config=config)
		poller = UpdatePoller(
			bot,
			relay_bot.dispatcher,
			poll_timeout=config.poll_timeout,
			retry_delay=config.poll_retry_delay,
		)
		logger.info(f"Relay bot started for {config.project_path}")
		try:
			await poller.run_forever()
		finally:
			poller.stop()
			await relay_bot.shutdown()
