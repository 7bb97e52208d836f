"""Centralized logging configuration for round-relay."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


def setup_logging(
	name: str = "round_relay",
	level: str | None = None,
	log_dir: str | Path = "data/logs",
	console: bool = True,
) -> logging.Logger:
	"""
	Set up logging with console and file handlers.

	Args:
		name: Logger name
		level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to env var or INFO.
		log_dir: Directory for log files
		console: Also log to stdout. Off for commands whose stdout is machine-read.

	Returns:
		Configured logger
	"""
	level = level or os.getenv("LOG_LEVEL", "INFO")
	log_level = getattr(logging, level.upper(), logging.INFO)

	logger = logging.getLogger(name)
	logger.setLevel(log_level)

	# Avoid duplicate handlers
	if logger.handlers:
		return logger

	detailed_formatter = logging.Formatter(
		"%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s",
		datefmt="%Y-%m-%d %H:%M:%S",
	)
	simple_formatter = logging.Formatter(
		"%(asctime)s [%(levelname)s] %(message)s",
		datefmt="%H:%M:%S",
	)

	secrets_filter = SensitiveDataFilter()

	if console:
		console_handler = logging.StreamHandler(sys.stdout)
		console_handler.setLevel(log_level)
		console_handler.setFormatter(simple_formatter)
		console_handler.addFilter(secrets_filter)
		logger.addHandler(console_handler)

	log_path = Path(log_dir)
	log_path.mkdir(parents=True, exist_ok=True)

	file_handler = RotatingFileHandler(
		log_path / f"{name}.log",
		maxBytes=10 * 1024 * 1024,  # 10 MB
		backupCount=5,
	)
	file_handler.setLevel(logging.DEBUG)  # File gets all logs
	file_handler.setFormatter(detailed_formatter)
	file_handler.addFilter(secrets_filter)
	logger.addHandler(file_handler)

	return logger


class SensitiveDataFilter(logging.Filter):
	"""Mask bot tokens and API keys that end up in log messages."""

	SENSITIVE_ENV_VARS = ("TELEGRAM_BOT_TOKEN", "OPENAI_API_KEY", "GEMINI_API_KEY")

	def filter(self, record: logging.LogRecord) -> bool:
		if isinstance(record.msg, str):
			for var in self.SENSITIVE_ENV_VARS:
				secret = os.getenv(var)
				if secret and secret in record.msg:
					record.msg = record.msg.replace(secret, f"[REDACTED_{var}]")
		return True
