"""Configuration system using platformdirs for cross-platform paths."""

import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

import platformdirs
from dotenv import load_dotenv

APP_NAME = "round-relay"
APP_AUTHOR = "round-relay"


@dataclass
class Config:
	"""Central configuration with XDG/platform conventions."""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	data_dir: Path = field(default_factory=lambda: Path(platformdirs.user_data_dir(APP_NAME)))

	# Derived paths
	decisions_dir: Path = field(init=False)
	log_dir: Path = field(init=False)
	session_log_dir: Path = field(init=False)

	# User-configurable
	project_path: Path = field(default_factory=Path.cwd)
	claude_bin: str = "claude"
	python_bin: str = sys.executable
	telegram_token: str = ""
	telegram_chat_id: str = ""

	# Timeouts (seconds)
	delegate_timeout: float = 25.0
	critique_timeout: float = 30.0
	round_timeout: float = 300.0
	relay_timeout: float = 1800.0
	poll_timeout: int = 30
	poll_retry_delay: float = 3.0

	# Live relay
	relay_max_lines: int = 30
	relay_update_interval: float = 0.5

	build_command: str = "npm run build"
	deploy_branch: str = "main"

	def __post_init__(self) -> None:
		self.decisions_dir = self.data_dir / "decisions"
		self.log_dir = self.data_dir / "logs"
		self.session_log_dir = self.log_dir / "sessions"

	def ensure_dirs(self) -> None:
		"""Create all required directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir.mkdir(parents=True, exist_ok=True)
		self.decisions_dir.mkdir(parents=True, exist_ok=True)
		self.log_dir.mkdir(parents=True, exist_ok=True)
		self.session_log_dir.mkdir(parents=True, exist_ok=True)


PATH_FIELDS = {"config_dir", "data_dir", "project_path"}
FLOAT_FIELDS = {
	"delegate_timeout", "critique_timeout", "round_timeout", "relay_timeout",
	"poll_retry_delay", "relay_update_interval",
}
INT_FIELDS = {"poll_timeout", "relay_max_lines"}


def _coerce(attr: str, val):
	if attr in PATH_FIELDS:
		return Path(os.path.expanduser(str(val)))
	if attr in FLOAT_FIELDS:
		return float(val)
	if attr in INT_FIELDS:
		return int(val)
	return val


def _apply_env_overrides(config: Config) -> Config:
	"""Apply ROUND_RELAY_* environment variable overrides."""
	env_map = {
		"ROUND_RELAY_CONFIG_DIR": "config_dir",
		"ROUND_RELAY_DATA_DIR": "data_dir",
		"ROUND_RELAY_PROJECT_PATH": "project_path",
		"ROUND_RELAY_CLAUDE_BIN": "claude_bin",
		"ROUND_RELAY_PYTHON_BIN": "python_bin",
		"ROUND_RELAY_DELEGATE_TIMEOUT": "delegate_timeout",
		"ROUND_RELAY_ROUND_TIMEOUT": "round_timeout",
		"ROUND_RELAY_BUILD_COMMAND": "build_command",
		"TELEGRAM_BOT_TOKEN": "telegram_token",
		"TELEGRAM_CHAT_ID": "telegram_chat_id",
	}
	for env_key, attr in env_map.items():
		val = os.getenv(env_key)
		if val:
			setattr(config, attr, _coerce(attr, val))
	# Recompute derived paths after overrides
	config.__post_init__()
	return config


def _apply_toml(config: Config) -> Config:
	"""Apply config.toml overrides if file exists."""
	toml_path = config.config_dir / "config.toml"
	if not toml_path.exists():
		return config

	with open(toml_path, "rb") as f:
		data = tomllib.load(f)

	for key, val in data.items():
		if hasattr(config, key):
			setattr(config, key, _coerce(key, val))

	config.__post_init__()
	return config


def load_config() -> Config:
	"""Load config with precedence: env vars (.env included) > config.toml > defaults."""
	load_dotenv()
	config = Config()
	config = _apply_toml(config)
	config = _apply_env_overrides(config)
	config.ensure_dirs()
	return config


# Singleton
_config: Config | None = None


def get_config() -> Config:
	"""Get or create the global config instance."""
	global _config
	if _config is None:
		_config = load_config()
	return _config
