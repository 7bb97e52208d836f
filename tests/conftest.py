"""Shared fixtures: isolated config, a fake Telegram bot and fake agent executables."""

import stat
import sys
import textwrap
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from round_relay.config import Config


@pytest.fixture
def config(tmp_path: Path) -> Config:
	"""Config rooted in a temporary directory."""
	cfg = Config(
		config_dir=tmp_path / "config",
		data_dir=tmp_path / "data",
		project_path=tmp_path,
	)
	cfg.ensure_dirs()
	return cfg


@pytest.fixture
def bot() -> MagicMock:
	"""Bot double recording every transport call."""
	fake = MagicMock()
	fake.send_message = AsyncMock(return_value=SimpleNamespace(message_id=42))
	fake.edit_message_text = AsyncMock()
	fake.answer_callback_query = AsyncMock()
	fake.get_updates = AsyncMock(return_value=[])
	return fake


def sent_texts(bot: MagicMock) -> list[str]:
	"""All texts passed to send_message, in order."""
	return [c.kwargs.get("text", "") for c in bot.send_message.call_args_list]


@pytest.fixture
def make_script(tmp_path: Path):
	"""Write an executable Python script and return its path."""

	def _make(name: str, body: str) -> Path:
		path = tmp_path / name
		path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
		path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
		return path

	return _make


@pytest.fixture(autouse=True)
def _no_real_keys(monkeypatch):
	"""Keep real credentials out of tests."""
	for var in (
		"TELEGRAM_BOT_TOKEN", "TELEGRAM_CHAT_ID", "OPENAI_API_KEY", "GEMINI_API_KEY", "MAX_TOKENS",
		"ROUND_RELAY_DATA_DIR", "ROUND_RELAY_CONFIG_DIR", "ROUND_RELAY_CLAUDE_BIN",
	):
		monkeypatch.delenv(var, raising=False)
