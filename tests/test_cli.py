"""Tests for the CLI module."""

import json
import sys
from unittest.mock import patch

import pytest

from round_relay import advisors, cli
from round_relay.decisions import HandoffFiles, PendingQuestion


@pytest.fixture(autouse=True)
def isolated(monkeypatch, tmp_path):
	"""Point config at tmp_path and keep the global logger untouched."""
	monkeypatch.setenv("ROUND_RELAY_DATA_DIR", str(tmp_path / "data"))
	monkeypatch.setenv("ROUND_RELAY_CONFIG_DIR", str(tmp_path / "config"))
	monkeypatch.setattr(cli, "setup_logging", lambda **kwargs: None)


def run_main(*argv):
	with patch.object(sys, "argv", ["round-relay", *argv]):
		cli.main()


def test_no_command_prints_help(capsys):
	with pytest.raises(SystemExit) as exc:
		run_main()
	assert exc.value.code == 1
	assert "round-relay" in capsys.readouterr().out


def test_classify(capsys):
	run_main("classify", "fix", "typo", "in", "footer")
	out = capsys.readouterr().out
	assert "simple" in out.lower()
	assert "Direct execution" in out


class TestInjectDecision:
	"""Stop hook output."""

	def test_nothing_pending(self, capsys, tmp_path):
		run_main("inject-decision", "--decisions-dir", str(tmp_path / "d"))
		assert json.loads(capsys.readouterr().out) == {"continue": True}

	def test_pending_answer_blocks(self, capsys, tmp_path):
		handoff = HandoffFiles(tmp_path / "d")
		handoff.write_question(PendingQuestion("q-1", "Which db?", ["Postgres", "SQLite"]))
		handoff.write_response("q-1", "Postgres")

		run_main("inject-decision", "--decisions-dir", str(tmp_path / "d"))

		result = json.loads(capsys.readouterr().out)
		assert result["decision"] == "block"
		assert "Question: Which db?" in result["reason"]
		assert "User answer: Postgres" in result["reason"]
		assert not handoff.response_file.exists()
		assert handoff.read_history()[-1]["answer"] == "Postgres"

	def test_default_dir_from_config(self, capsys, tmp_path):
		HandoffFiles(tmp_path / "data" / "decisions").write_response("q-2", "yes")
		run_main("inject-decision")
		assert json.loads(capsys.readouterr().out)["decision"] == "block"


class TestAsk:
	def test_prints_banner_and_answer(self, capsys):
		with patch.dict(advisors.BACKENDS, {"gpt": lambda question, role: f"answer to {question} as {role}"}):
			run_main("ask", "gpt", "which", "queue?", "--role", "meeting")
		out = capsys.readouterr().out
		assert out.startswith("=== Strategist (gpt-4o, role: meeting) ===")
		assert "answer to which queue? as meeting" in out

	def test_question_from_file(self, capsys, tmp_path):
		question_file = tmp_path / "q.txt"
		question_file.write_text("long question")
		with patch.dict(advisors.BACKENDS, {"gemini": lambda question, role: question.upper()}):
			run_main("ask", "gemini", "--file", str(question_file))
		assert "LONG QUESTION" in capsys.readouterr().out

	def test_error_exits_nonzero(self, capsys):
		with pytest.raises(SystemExit) as exc:
			run_main("ask", "gpt", "question")
		assert exc.value.code == 1
		captured = capsys.readouterr()
		assert "OPENAI_API_KEY is not set" in captured.err
		assert captured.out == ""
