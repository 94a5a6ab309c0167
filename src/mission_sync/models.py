"""Data models for the UI-side mission mirror."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from mission_sync.constants import CONTEXT_ZONE_THRESHOLDS, LOCAL_ID_PREFIX


def _now() -> datetime:
	return datetime.now(timezone.utc)


def new_local_id() -> str:
	return f"{LOCAL_ID_PREFIX}{uuid4().hex[:12]}"


def is_local_id(mission_id: str) -> bool:
	return mission_id.startswith(LOCAL_ID_PREFIX)


class MissionState(str, Enum):
	"""Execution state of a mission."""

	IDLE = "idle"
	RUNNING = "running"
	PAUSED = "paused"
	COMPLETE = "complete"
	ERROR = "error"
	REDLINED = "redlined"

	@property
	def is_terminal(self) -> bool:
		return self in (MissionState.COMPLETE, MissionState.ERROR, MissionState.REDLINED)


class MissionMode(str, Enum):
	AGENTIC = "agentic"
	INTERACTIVE = "interactive"


class OperationKind(str, Enum):
	"""Kind of in-flight command tracked by the pending ledger."""

	CREATE = "create"
	UPDATE = "update"
	DELETE = "delete"
	START = "start"
	PAUSE = "pause"
	RESUME = "resume"
	ABORT = "abort"

	@property
	def is_control(self) -> bool:
		return self in _CONTROL_KINDS


_CONTROL_KINDS = frozenset({
	OperationKind.START,
	OperationKind.PAUSE,
	OperationKind.RESUME,
	OperationKind.ABORT,
})


class ContextZone(str, Enum):
	SAFE = "safe"
	WARNING = "warning"
	DANGER = "danger"
	CRITICAL = "critical"


def classify_context(usage_percent: float, thresholds: dict[str, float] | None = None) -> ContextZone:
	"""Map a context usage percentage to its zone."""
	limits = thresholds or CONTEXT_ZONE_THRESHOLDS
	if usage_percent >= limits["critical"]:
		return ContextZone.CRITICAL
	if usage_percent >= limits["danger"]:
		return ContextZone.DANGER
	if usage_percent >= limits["warning"]:
		return ContextZone.WARNING
	return ContextZone.SAFE


@dataclass(frozen=True)
class ContextUsage:
	"""Token budget consumption reported by the backend."""

	input_tokens: int = 0
	output_tokens: int = 0
	max_tokens: int = 200_000
	usage_percent: float = 0.0

	def zone_for(self, thresholds: dict[str, float] | None = None) -> ContextZone:
		return classify_context(self.usage_percent, thresholds)

	def near_limit_for(self, thresholds: dict[str, float] | None = None) -> bool:
		return self.zone_for(thresholds) in (ContextZone.DANGER, ContextZone.CRITICAL)

	# Properties use the default thresholds; pass configured ones to the methods above.
	@property
	def zone(self) -> ContextZone:
		return self.zone_for()

	@property
	def is_near_limit(self) -> bool:
		return self.near_limit_for()

	@property
	def is_redlined(self) -> bool:
		return self.zone == ContextZone.CRITICAL


@dataclass(frozen=True)
class MissionProgress:
	current_step: int = 0
	total_steps: int = 0
	current_action: str = ""
	percentage: float = 0.0
	context_usage: ContextUsage = field(default_factory=ContextUsage)


@dataclass(frozen=True)
class MissionCost:
	input_cost: float = 0.0
	output_cost: float = 0.0
	total_cost: float = 0.0
	currency: str = "USD"


@dataclass(frozen=True)
class Checkpoint:
	"""Immutable named snapshot of mission progress."""

	id: str
	name: str = ""
	created_at: datetime = field(default_factory=_now)
	step: int = 0
	description: str = ""


@dataclass(frozen=True)
class MissionError:
	code: str
	message: str = ""


@dataclass(frozen=True)
class Mission:
	"""A single tracked unit of agentic/interactive task execution.

	Instances are never mutated; the registry replaces them wholesale so
	snapshots handed to subscribers stay valid.
	"""

	id: str = field(default_factory=new_local_id)
	state: MissionState = MissionState.IDLE
	title: str = ""
	prompt: str = ""
	spec_ids: tuple[str, ...] = ()
	backend_id: str = ""
	mode: MissionMode = MissionMode.AGENTIC
	tags: frozenset[str] = frozenset()
	progress: MissionProgress = field(default_factory=MissionProgress)
	cost: MissionCost = field(default_factory=MissionCost)
	checkpoints: tuple[Checkpoint, ...] = ()
	error: MissionError | None = None
	created_at: datetime = field(default_factory=_now)
	updated_at: datetime = field(default_factory=_now)
	started_at: datetime | None = None
	completed_at: datetime | None = None

	@property
	def is_local(self) -> bool:
		return is_local_id(self.id)


@dataclass(frozen=True)
class MissionInput:
	"""Configuration used to create (or restart) a mission."""

	title: str
	prompt: str = ""
	backend_id: str = ""
	mode: MissionMode = MissionMode.AGENTIC
	spec_ids: tuple[str, ...] = ()
	tags: frozenset[str] = frozenset()

	@classmethod
	def from_mission(cls, mission: Mission) -> MissionInput:
		return cls(
			title=mission.title,
			prompt=mission.prompt,
			backend_id=mission.backend_id,
			mode=mission.mode,
			spec_ids=mission.spec_ids,
			tags=mission.tags,
		)

	def to_mission(self) -> Mission:
		"""Build the optimistic local entity for this input."""
		return Mission(
			title=self.title,
			prompt=self.prompt,
			backend_id=self.backend_id,
			mode=self.mode,
			spec_ids=tuple(self.spec_ids),
			tags=frozenset(self.tags),
		)


@dataclass(frozen=True)
class MissionUpdate:
	"""Partial edit of a mission's configuration. None means unchanged."""

	title: str | None = None
	prompt: str | None = None
	backend_id: str | None = None
	mode: MissionMode | None = None
	spec_ids: tuple[str, ...] | None = None
	tags: frozenset[str] | None = None

	def changes(self) -> dict[str, Any]:
		out: dict[str, Any] = {}
		for name in ("title", "prompt", "backend_id", "mode", "spec_ids", "tags"):
			value = getattr(self, name)
			if value is not None:
				out[name] = value
		if "spec_ids" in out:
			out["spec_ids"] = tuple(out["spec_ids"])
		if "tags" in out:
			out["tags"] = frozenset(out["tags"])
		return out


class PendingStatus(str, Enum):
	IN_FLIGHT = "in_flight"
	CONFIRMED = "confirmed"
	ROLLED_BACK = "rolled_back"
	CANCELLED = "cancelled"


@dataclass
class PendingOperation:
	"""Bookkeeping for one in-flight command awaiting its backend response.

	Moves from IN_FLIGHT to exactly one of CONFIRMED, ROLLED_BACK or
	CANCELLED; any other move raises.
	"""

	target_id: str
	kind: OperationKind
	issued_at: datetime = field(default_factory=_now)
	status: PendingStatus = PendingStatus.IN_FLIGHT
	snapshot: Mission | None = None  # pre-change entity for rollback
	applied: Mission | None = None  # entity right after the optimistic change
	position: int = -1  # insertion index of snapshot, for delete rollback
	superseded: bool = False  # a backend event overwrote the optimistic change

	@property
	def in_flight(self) -> bool:
		return self.status == PendingStatus.IN_FLIGHT

	def _finish(self, status: PendingStatus) -> None:
		if self.status != PendingStatus.IN_FLIGHT:
			raise ValueError(
				f"Pending {self.kind.value} for {self.target_id} already {self.status.value}"
			)
		self.status = status

	def confirm(self) -> None:
		self._finish(PendingStatus.CONFIRMED)

	def roll_back(self) -> None:
		self._finish(PendingStatus.ROLLED_BACK)

	def cancel(self) -> None:
		self._finish(PendingStatus.CANCELLED)


@dataclass(frozen=True)
class MissionLogEntry:
	mission_id: str
	level: str = "info"  # info/warn/error
	message: str = ""
	timestamp: datetime = field(default_factory=_now)
