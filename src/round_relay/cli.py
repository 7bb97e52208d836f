"""CLI for round-relay: serve, classify, inject-decision and ask commands."""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from .config import load_config
from .logging_config import setup_logging


def cmd_serve(args: argparse.Namespace) -> None:
	"""Run the Telegram relay bot."""
	from .telegram_bot import serve

	config = load_config()
	setup_logging(log_dir=config.log_dir)
	try:
		asyncio.run(serve(config))
	except ValueError as e:
		print(f"Error: {e}", file=sys.stderr)
		sys.exit(1)
	except KeyboardInterrupt:
		pass


def cmd_classify(args: argparse.Namespace) -> None:
	"""Show how a task would be scheduled."""
	from rich.console import Console
	from rich.table import Table

	from .complexity import classify_complexity
	from .orchestrator import MODE_LABELS

	text = " ".join(args.text)
	result = classify_complexity(text)

	table = Table(title="Task complexity", show_header=True)
	table.add_column("Score", justify="right")
	table.add_column("Label")
	table.add_column("Rounds", justify="right")
	table.add_column("Mode")
	table.add_row(str(result.score), result.label.value, str(result.rounds), MODE_LABELS[result.rounds])
	Console().print(table)


def cmd_inject_decision(args: argparse.Namespace) -> None:
	"""
	Stop hook: inject a pending human answer into the agent's next turn.

	Always prints a JSON hook result; never fails the hook.
	"""
	from .decisions import HandoffFiles

	config = load_config()
	setup_logging(log_dir=config.log_dir, console=False)
	decisions_dir = Path(args.decisions_dir) if args.decisions_dir else config.decisions_dir
	try:
		result = HandoffFiles(decisions_dir).consume_response()
	except OSError as e:
		print(f"inject-decision: {e}", file=sys.stderr)
		result = None
	print(json.dumps(result if result else {"continue": True}, ensure_ascii=False))


def cmd_ask(args: argparse.Namespace) -> None:
	"""Ask an advisor and print its answer (used by the agent and delegate rounds)."""
	from .advisors import AdvisorError, ask

	config = load_config()
	setup_logging(log_dir=config.log_dir, console=False)

	if args.file:
		question = Path(args.file).read_text(encoding="utf-8")
	else:
		question = " ".join(args.question)

	try:
		print(ask(args.advisor, question, role=args.role))
	except AdvisorError as e:
		print(f"Error: {e}", file=sys.stderr)
		sys.exit(1)


def main() -> None:
	"""CLI entry point."""
	parser = argparse.ArgumentParser(
		prog="round-relay",
		description="Telegram relay for autonomous coding agents with multi-advisor round discussions",
	)
	subparsers = parser.add_subparsers(dest="command")

	# serve
	serve_parser = subparsers.add_parser("serve", help="Run the Telegram bot")
	serve_parser.set_defaults(func=cmd_serve)

	# classify
	classify_parser = subparsers.add_parser("classify", help="Show the round budget for a task")
	classify_parser.add_argument("text", nargs="+", help="Task description")
	classify_parser.set_defaults(func=cmd_classify)

	# inject-decision
	inject_parser = subparsers.add_parser("inject-decision", help="Stop hook: inject a pending answer")
	inject_parser.add_argument("--decisions-dir", type=str, default=None, help="Override the hand-off directory")
	inject_parser.set_defaults(func=cmd_inject_decision)

	# ask
	ask_parser = subparsers.add_parser("ask", help="Ask an advisor")
	ask_parser.add_argument("advisor", choices=["gemini", "gpt"], help="Advisor to ask")
	ask_parser.add_argument("question", nargs="*", help="Question text")
	ask_parser.add_argument(
		"--role",
		choices=["researcher", "meeting", "ux", "default"],
		default="default",
		help="Advisor role (default: default)",
	)
	ask_parser.add_argument("--file", type=str, default=None, help="Read the question from a file")
	ask_parser.set_defaults(func=cmd_ask)

	args = parser.parse_args()

	if not args.command:
		parser.print_help()
		sys.exit(1)

	args.func(args)


if __name__ == "__main__":
	main()
