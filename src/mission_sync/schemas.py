"""Pydantic wire schemas for backend commands and notifications.

The backend speaks camelCase JSON. Everything crossing the channel is
validated here once and converted to the frozen dataclasses in models.py;
notifications decode into one class per event kind.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from mission_sync.models import (
	Checkpoint,
	ContextUsage,
	Mission,
	MissionCost,
	MissionError,
	MissionInput,
	MissionMode,
	MissionProgress,
	MissionState,
	MissionUpdate,
	_now,
)


class WireModel(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ContextUsageSchema(WireModel):
	input_tokens: int = 0
	output_tokens: int = 0
	max_tokens: int = 200_000
	usage_percent: float = 0.0

	def to_model(self) -> ContextUsage:
		return ContextUsage(**self.model_dump())


class ProgressSchema(WireModel):
	current_step: int = 0
	total_steps: int = 0
	current_action: str = ""
	percentage: float = 0.0
	context_usage: ContextUsageSchema = ContextUsageSchema()

	def to_model(self) -> MissionProgress:
		return MissionProgress(
			current_step=self.current_step,
			total_steps=self.total_steps,
			current_action=self.current_action,
			percentage=self.percentage,
			context_usage=self.context_usage.to_model(),
		)


class CostSchema(WireModel):
	input_cost: float = 0.0
	output_cost: float = 0.0
	total_cost: float = 0.0
	currency: str = "USD"

	def to_model(self) -> MissionCost:
		return MissionCost(**self.model_dump())


class CheckpointSchema(WireModel):
	id: str
	name: str = ""
	created_at: datetime | None = None
	step: int = 0
	description: str = ""

	def to_model(self) -> Checkpoint:
		return Checkpoint(
			id=self.id,
			name=self.name,
			created_at=self.created_at or _now(),
			step=self.step,
			description=self.description,
		)


class ErrorSchema(WireModel):
	code: str = "unknown"
	message: str = ""

	def to_model(self) -> MissionError:
		return MissionError(code=self.code, message=self.message)


class MissionSchema(WireModel):
	"""A complete mission as returned by mission.create / mission.list."""

	id: str
	state: MissionState = MissionState.IDLE
	title: str = ""
	prompt: str = ""
	spec_ids: list[str] = []
	backend_id: str = ""
	mode: MissionMode = MissionMode.AGENTIC
	tags: list[str] = []
	progress: ProgressSchema = ProgressSchema()
	cost: CostSchema = CostSchema()
	checkpoints: list[CheckpointSchema] = []
	error: ErrorSchema | None = None
	created_at: datetime | None = None
	updated_at: datetime | None = None
	started_at: datetime | None = None
	completed_at: datetime | None = None

	def to_mission(self) -> Mission:
		created = self.created_at or _now()
		error = self.error.to_model() if self.error and self.state == MissionState.ERROR else None
		return Mission(
			id=self.id,
			state=self.state,
			title=self.title,
			prompt=self.prompt,
			spec_ids=tuple(self.spec_ids),
			backend_id=self.backend_id,
			mode=self.mode,
			tags=frozenset(self.tags),
			progress=self.progress.to_model(),
			cost=self.cost.to_model(),
			checkpoints=_dedupe_checkpoints(c.to_model() for c in self.checkpoints),
			error=error,
			created_at=created,
			updated_at=self.updated_at or created,
			started_at=self.started_at,
			completed_at=self.completed_at,
		)


class MissionPatchSchema(WireModel):
	"""Partial mission carried by mission:updated. Absent keys are left alone."""

	state: MissionState | None = None
	title: str | None = None
	prompt: str | None = None
	spec_ids: list[str] | None = None
	backend_id: str | None = None
	mode: MissionMode | None = None
	tags: list[str] | None = None
	progress: ProgressSchema | None = None
	cost: CostSchema | None = None
	checkpoints: list[CheckpointSchema] | None = None
	error: ErrorSchema | None = None
	updated_at: datetime | None = None
	started_at: datetime | None = None
	completed_at: datetime | None = None

	def field_changes(self) -> dict[str, Any]:
		"""Plain field changes for Registry.merge.

		state, error and checkpoints are excluded; they go through the
		transition function and the append path respectively.
		"""
		data = self.model_dump(
			exclude_unset=True,
			exclude={"state", "error", "checkpoints", "updated_at"},
		)
		if data.get("spec_ids") is not None:
			data["spec_ids"] = tuple(data["spec_ids"])
		if data.get("tags") is not None:
			data["tags"] = frozenset(data["tags"])
		return {k: v for k, v in data.items() if v is not None}


class MissionInputSchema(WireModel):
	"""Outgoing payload for mission.create and mission.update."""

	title: str | None = None
	prompt: str | None = None
	backend_id: str | None = None
	mode: MissionMode | None = None
	spec_ids: list[str] | None = None
	tags: list[str] | None = None

	@classmethod
	def from_input(cls, data: MissionInput | MissionUpdate) -> MissionInputSchema:
		fields: dict[str, Any] = {}
		for name in ("title", "prompt", "backend_id", "mode"):
			value = getattr(data, name)
			if value is not None:
				fields[name] = value
		if data.spec_ids is not None:
			fields["spec_ids"] = list(data.spec_ids)
		if data.tags is not None:
			fields["tags"] = sorted(data.tags)
		return cls(**fields)

	def to_wire(self) -> dict[str, Any]:
		return self.model_dump(by_alias=True, exclude_none=True, mode="json")


def _dedupe_checkpoints(checkpoints: Any) -> tuple[Checkpoint, ...]:
	seen: set[str] = set()
	out: list[Checkpoint] = []
	for cp in checkpoints:
		if cp.id not in seen:
			seen.add(cp.id)
			out.append(cp)
	return tuple(out)


# -- Notifications --


class MissionEvent(WireModel):
	"""Base for notifications; every one names its mission."""

	name: ClassVar[str] = ""

	mission_id: str


class MissionCreated(MissionEvent):
	name: ClassVar[str] = "mission:created"

	mission: MissionSchema


class MissionUpdated(MissionEvent):
	name: ClassVar[str] = "mission:updated"

	mission: MissionPatchSchema


class MissionDeleted(MissionEvent):
	name: ClassVar[str] = "mission:deleted"


class MissionStateChanged(MissionEvent):
	name: ClassVar[str] = "mission:state-changed"

	previous_state: MissionState | None = None
	new_state: MissionState
	timestamp: datetime | None = None
	error: ErrorSchema | None = None


class MissionProgressed(MissionEvent):
	name: ClassVar[str] = "mission:progress"

	progress: ProgressSchema

	def progress_changes(self) -> dict[str, Any]:
		return self.progress.model_dump(exclude_unset=True)


class MissionCheckpointed(MissionEvent):
	name: ClassVar[str] = "mission:checkpoint"

	checkpoint: CheckpointSchema


class MissionCostUpdated(MissionEvent):
	name: ClassVar[str] = "mission:cost-updated"

	cost: CostSchema

	def cost_changes(self) -> dict[str, Any]:
		return self.cost.model_dump(exclude_unset=True)


class MissionLogged(MissionEvent):
	name: ClassVar[str] = "mission:log"

	level: Literal["info", "warn", "error"] = "info"
	message: str = ""
	timestamp: datetime | None = None


EVENT_TYPES: dict[str, type[MissionEvent]] = {
	cls.name: cls
	for cls in (
		MissionCreated,
		MissionUpdated,
		MissionDeleted,
		MissionStateChanged,
		MissionProgressed,
		MissionCheckpointed,
		MissionCostUpdated,
		MissionLogged,
	)
}


def normalize_event_name(name: str) -> str:
	"""Accept both mission.created and mission:created spellings."""
	if name.startswith("mission.") and ":" not in name:
		return "mission:" + name[len("mission."):]
	return name


def decode_event(name: str, payload: dict[str, Any]) -> MissionEvent:
	"""Decode a raw notification into its typed event.

	Raises:
		ValueError: Unknown event name, or a payload that fails validation
			(pydantic.ValidationError is a ValueError).
	"""
	event_cls = EVENT_TYPES.get(normalize_event_name(name))
	if event_cls is None:
		raise ValueError(f"Unknown mission event: {name!r}")
	return event_cls.model_validate(payload)


def decode_mission(data: Any) -> Mission:
	return MissionSchema.model_validate(data).to_mission()


def decode_mission_list(data: Any) -> list[Mission]:
	if isinstance(data, dict) and "missions" in data:
		data = data["missions"]
	if not isinstance(data, list):
		raise ValueError(f"Expected a list of missions, got {type(data).__name__}")
	return [decode_mission(item) for item in data]
