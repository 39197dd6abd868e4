#!/usr/bin/env python3
#
# certflow/utils/config.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Configuration loading and app-level defaults."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path

_log = logging.getLogger(__name__)

_ENV_PREFIX = "CERTFLOW_"


class ConfigValidationError(Exception):
	"""Raised when critical configuration is missing or invalid."""


@dataclass(frozen=True)
class Config:
	"""Resolved runtime configuration derived from env and defaults."""
	base_dir: Path
	data_dir: Path
	db_path: Path
	log_level: str = "INFO"
	port: int = 8000

	# Verification poller
	poll_interval: float = 3.0
	poll_timeout: float = 600.0

	# DNS-01 submission bounds
	dns_submit_max_attempts: int = 20
	dns_challenge_ttl: float = 86400.0

	# Auto-renewal
	renewal_threshold_days: int = 30
	renewal_batch_size: int = 10
	renewal_interval: float = 86400.0

	# Periodic re-scan of pending rows (leader only)
	recovery_interval: float = 60.0

	# Issuance guards
	max_issuances_per_week: int = 45
	hostname_guard: bool = True

	# Challenge issuer
	sandbox_mode: bool = False
	acme_service_url: str = ""
	acme_service_token: str = ""

	# Edge agent webhook
	agent_url: str = ""
	agent_secret: str = ""

	# Shared secret for the internal certificate bundle endpoint (empty disables it)
	internal_secret: str = ""

	# API bearer token (empty disables auth)
	api_token: str = ""


def _parse_value(raw: str) -> str:
	"""Extract value, respecting quotes and stripping inline comments."""
	raw = raw.strip()
	if raw and raw[0] in ('"', "'"):
		quote = raw[0]
		end = raw.find(quote, 1)
		if end != -1:
			return raw[1:end]
	if " #" in raw:
		raw = raw.split(" #", 1)[0]
	return raw.strip()


def load_dotenv(dotenv_path: Path | None = None) -> None:
	"""Load simple KEY=VALUE pairs from settings.env.

	Blank lines, comments and ``export`` prefixes are handled. Variables that
	are already set in the environment are never overridden.
	"""
	project_root = Path(__file__).resolve().parents[2]
	dotenv_path = dotenv_path or (project_root / "settings.env")
	if not dotenv_path.exists():
		return
	for raw_line in dotenv_path.read_text(encoding="utf-8").splitlines():
		line = raw_line.strip()
		if not line or line.startswith("#") or "=" not in line:
			continue
		key, value = line.split("=", 1)
		key = key.strip()
		if key.startswith("export "):
			key = key[7:].strip()
		if not key:
			continue
		os.environ.setdefault(key, _parse_value(value))


def _env(name: str, default: str = "") -> str:
	return os.getenv(_ENV_PREFIX + name, default).strip()


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
	raw = _env(name)
	if not raw:
		return default
	try:
		value = float(raw)
	except ValueError as exc:
		raise ConfigValidationError(f"{_ENV_PREFIX}{name} must be a number, got {raw!r}") from exc
	if value < minimum:
		raise ConfigValidationError(f"{_ENV_PREFIX}{name} must be >= {minimum}, got {value}")
	return value


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
	raw = _env(name)
	if not raw:
		return default
	try:
		value = int(raw)
	except ValueError as exc:
		raise ConfigValidationError(f"{_ENV_PREFIX}{name} must be an integer, got {raw!r}") from exc
	if value < minimum:
		raise ConfigValidationError(f"{_ENV_PREFIX}{name} must be >= {minimum}, got {value}")
	return value


def _env_bool(name: str, default: bool) -> bool:
	raw = _env(name)
	if not raw:
		return default
	return raw.lower() in {"1", "true", "yes", "on"}


def load_config() -> Config:
	"""Load configuration from environment variables (optionally via settings.env)."""
	load_dotenv()
	project_root = Path(__file__).resolve().parents[2]

	data_dir = Path(_env("DATA_DIR", str(project_root / "data"))).resolve()
	try:
		if data_dir.exists() and not data_dir.is_dir():
			raise ConfigValidationError(f"Path exists but is not a directory: {data_dir}")
		data_dir.mkdir(parents=True, exist_ok=True)
	except OSError as exc:
		raise ConfigValidationError(f"Cannot create data directory: {exc}") from exc

	allowed_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
	log_level = _env("LOG_LEVEL", "INFO").upper()
	if log_level not in allowed_levels:
		log_level = "INFO"

	poll_interval = _env_float("POLL_INTERVAL", 3.0, minimum=0.01)
	poll_timeout = _env_float("POLL_TIMEOUT", 600.0, minimum=1.0)
	if poll_timeout < poll_interval:
		raise ConfigValidationError(
			f"{_ENV_PREFIX}POLL_TIMEOUT ({poll_timeout}) must not be shorter than "
			f"{_ENV_PREFIX}POLL_INTERVAL ({poll_interval})"
		)

	sandbox_mode = _env_bool("SANDBOX_MODE", False)
	acme_service_url = _env("ACME_SERVICE_URL").rstrip("/")
	if not sandbox_mode and not acme_service_url:
		_log.warning(
			"%sACME_SERVICE_URL is not set and sandbox mode is off; certificate issuance will fail",
			_ENV_PREFIX,
		)

	api_token = _env("API_TOKEN")
	if not api_token:
		_log.warning("%sAPI_TOKEN is not set; API authentication is disabled", _ENV_PREFIX)

	return Config(
		base_dir=project_root,
		data_dir=data_dir,
		db_path=(data_dir / "certflow.db").resolve(),
		log_level=log_level,
		port=_env_int("PORT", 8000, minimum=1),
		poll_interval=poll_interval,
		poll_timeout=poll_timeout,
		dns_submit_max_attempts=_env_int("DNS_SUBMIT_MAX_ATTEMPTS", 20, minimum=1),
		dns_challenge_ttl=_env_float("DNS_CHALLENGE_TTL", 86400.0, minimum=60.0),
		renewal_threshold_days=_env_int("RENEWAL_THRESHOLD_DAYS", 30, minimum=1),
		renewal_batch_size=_env_int("RENEWAL_BATCH_SIZE", 10, minimum=1),
		renewal_interval=_env_float("RENEWAL_INTERVAL", 86400.0, minimum=60.0),
		recovery_interval=_env_float("RECOVERY_INTERVAL", 60.0, minimum=5.0),
		max_issuances_per_week=_env_int("MAX_ISSUANCES_PER_WEEK", 45, minimum=1),
		hostname_guard=_env_bool("HOSTNAME_GUARD", True),
		sandbox_mode=sandbox_mode,
		acme_service_url=acme_service_url,
		acme_service_token=_env("ACME_SERVICE_TOKEN"),
		agent_url=_env("AGENT_URL").rstrip("/"),
		agent_secret=_env("AGENT_SECRET"),
		internal_secret=_env("INTERNAL_SECRET"),
		api_token=api_token,
	)


# Global config singleton with thread-safe lazy initialization
_config: Config | None = None
_config_lock = threading.Lock()


def get_config() -> Config:
	"""Get the global config singleton (thread-safe)."""
	global _config
	if _config is None:
		with _config_lock:
			if _config is None:
				_config = load_config()
	return _config


def reset_config() -> None:
	"""Reset the cached config. Intended for tests only."""
	global _config
	with _config_lock:
		_config = None
