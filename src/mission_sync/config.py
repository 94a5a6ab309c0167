"""TOML configuration loader for mission_sync."""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from mission_sync.constants import (
	CONTEXT_ZONE_THRESHOLDS,
	DEFAULT_COMMAND_TIMEOUT,
	DEFAULT_POLL_INTERVAL,
	LOG_HISTORY_LIMIT,
)


@dataclass
class ChannelConfig:
	"""Backend transport settings."""

	base_url: str = "http://127.0.0.1:8765"
	command_timeout: float = DEFAULT_COMMAND_TIMEOUT
	poll_interval: float = DEFAULT_POLL_INTERVAL


@dataclass
class RegistryConfig:
	log_limit: int = LOG_HISTORY_LIMIT


@dataclass
class ContextConfig:
	"""Context usage zone thresholds (percent)."""

	warning_percent: float = CONTEXT_ZONE_THRESHOLDS["warning"]
	danger_percent: float = CONTEXT_ZONE_THRESHOLDS["danger"]
	critical_percent: float = CONTEXT_ZONE_THRESHOLDS["critical"]

	def thresholds(self) -> dict[str, float]:
		return {
			"warning": self.warning_percent,
			"danger": self.danger_percent,
			"critical": self.critical_percent,
		}


@dataclass
class LoggingConfig:
	level: str = "INFO"
	format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class SyncConfig:
	"""Top-level mission_sync configuration."""

	channel: ChannelConfig = field(default_factory=ChannelConfig)
	registry: RegistryConfig = field(default_factory=RegistryConfig)
	context: ContextConfig = field(default_factory=ContextConfig)
	logging: LoggingConfig = field(default_factory=LoggingConfig)


def _build_channel(data: dict[str, Any]) -> ChannelConfig:
	cc = ChannelConfig()
	if "base_url" in data:
		cc.base_url = str(data["base_url"])
	if "command_timeout" in data:
		cc.command_timeout = float(data["command_timeout"])
	if "poll_interval" in data:
		cc.poll_interval = float(data["poll_interval"])
	return cc


def _build_registry(data: dict[str, Any]) -> RegistryConfig:
	rc = RegistryConfig()
	if "log_limit" in data:
		rc.log_limit = int(data["log_limit"])
	return rc


def _build_context(data: dict[str, Any]) -> ContextConfig:
	cc = ContextConfig()
	for key in ("warning_percent", "danger_percent", "critical_percent"):
		if key in data:
			setattr(cc, key, float(data[key]))
	return cc


def _build_logging(data: dict[str, Any]) -> LoggingConfig:
	lc = LoggingConfig()
	if "level" in data:
		lc.level = str(data["level"]).upper()
	if "format" in data:
		lc.format = str(data["format"])
	return lc


def load_config(path: str | Path) -> SyncConfig:
	"""Load a mission-sync.toml config file.

	Args:
		path: Path to the TOML config file.

	Returns:
		Parsed SyncConfig.

	Raises:
		FileNotFoundError: If config file doesn't exist.
		tomllib.TOMLDecodeError: If config is invalid TOML.
	"""
	config_path = Path(path)
	if not config_path.exists():
		raise FileNotFoundError(f"Config file not found: {config_path}")

	with open(config_path, "rb") as f:
		data = tomllib.load(f)

	sc = SyncConfig()
	if "channel" in data:
		sc.channel = _build_channel(data["channel"])
	if "registry" in data:
		sc.registry = _build_registry(data["registry"])
	if "context" in data:
		sc.context = _build_context(data["context"])
	if "logging" in data:
		sc.logging = _build_logging(data["logging"])
	return sc


def validate_config(config: SyncConfig) -> list[tuple[str, str]]:
	"""Perform semantic validation of a loaded SyncConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	"""
	issues: list[tuple[str, str]] = []

	parsed = urlparse(config.channel.base_url)
	if parsed.scheme not in ("http", "https") or not parsed.netloc:
		issues.append(("error", f"channel.base_url must be an http(s) URL: {config.channel.base_url}"))
	if config.channel.command_timeout <= 0:
		issues.append(("error", f"channel.command_timeout must be positive: {config.channel.command_timeout}"))
	if config.channel.poll_interval <= 0:
		issues.append(("error", f"channel.poll_interval must be positive: {config.channel.poll_interval}"))
	elif config.channel.poll_interval < 0.1:
		issues.append(("warning", f"channel.poll_interval is very low: {config.channel.poll_interval}s"))

	if config.registry.log_limit <= 0:
		issues.append(("error", f"registry.log_limit must be positive: {config.registry.log_limit}"))

	ctx = config.context
	if not 0 < ctx.warning_percent < ctx.danger_percent < ctx.critical_percent <= 100:
		issues.append((
			"error",
			"context thresholds must satisfy 0 < warning < danger < critical <= 100 "
			f"(got {ctx.warning_percent}/{ctx.danger_percent}/{ctx.critical_percent})",
		))

	if not isinstance(logging.getLevelName(config.logging.level), int):
		issues.append(("error", f"logging.level is not a known level: {config.logging.level}"))

	return issues


def configure_logging(config: LoggingConfig) -> None:
	logging.basicConfig(
		level=config.level,
		format=config.format,
		datefmt="%H:%M:%S",
		force=True,
	)
