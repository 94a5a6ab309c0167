"""Centralized identifiers, thresholds and default limits."""

from __future__ import annotations

# Reserved prefix for missions that exist only locally (create not yet confirmed)
LOCAL_ID_PREFIX = "local-"

# Bounded mission log history kept by the registry
LOG_HISTORY_LIMIT = 100

# Context usage zone thresholds (usage percent, lower bound inclusive)
CONTEXT_ZONE_THRESHOLDS: dict[str, float] = {
	"warning": 60.0,
	"danger": 80.0,
	"critical": 95.0,
}

# Error code recorded on a mission aborted by the user
ABORTED_ERROR_CODE = "aborted"

DEFAULT_COMMAND_TIMEOUT = 30.0
DEFAULT_POLL_INTERVAL = 1.0
