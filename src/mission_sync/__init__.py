"""Client-side mission state synchronization engine."""

from __future__ import annotations

from mission_sync.channel import EventChannel, HttpEventChannel
from mission_sync.engine import MissionSyncEngine
from mission_sync.errors import (
	BackendError,
	ConflictError,
	MissionSyncError,
	PreconditionError,
	StaleEventError,
)
from mission_sync.executor import CommandExecutor
from mission_sync.models import Mission, MissionInput, MissionState, MissionUpdate
from mission_sync.reconciler import EventReconciler
from mission_sync.registry import MissionRegistry
from mission_sync.views import MissionFilter, MissionSort, MissionViews

__all__ = [
	"BackendError",
	"CommandExecutor",
	"ConflictError",
	"EventChannel",
	"EventReconciler",
	"HttpEventChannel",
	"Mission",
	"MissionFilter",
	"MissionInput",
	"MissionRegistry",
	"MissionSort",
	"MissionState",
	"MissionSyncEngine",
	"MissionSyncError",
	"MissionUpdate",
	"MissionViews",
	"PreconditionError",
	"StaleEventError",
]
