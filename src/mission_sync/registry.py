"""Mission registry: the single source of truth for the UI-side mission mirror.

Every mutation swaps in a fresh dict of frozen Mission objects, so a
RegistrySnapshot handed to a subscriber never changes underneath it.
Subscribers are notified synchronously, inside the mutating call.
"""

from __future__ import annotations

import dataclasses
import logging
from collections import deque
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any

from mission_sync import state_machine
from mission_sync.constants import LOG_HISTORY_LIMIT
from mission_sync.errors import MissionSyncError
from mission_sync.models import (
	Checkpoint,
	ContextUsage,
	Mission,
	MissionCost,
	MissionError,
	MissionLogEntry,
	MissionProgress,
	MissionState,
	OperationKind,
	PendingOperation,
	_now,
)

logger = logging.getLogger(__name__)

# Fields a partial merge may touch. state/error go through transition(),
# checkpoints through append_checkpoint(), identity through replace_id().
MERGEABLE_FIELDS = frozenset({
	"title",
	"prompt",
	"spec_ids",
	"backend_id",
	"mode",
	"tags",
	"progress",
	"cost",
	"started_at",
	"completed_at",
})


@dataclass(frozen=True)
class RegistrySnapshot:
	"""Immutable view of the registry at one version."""

	missions: Mapping[str, Mission] = field(default_factory=lambda: MappingProxyType({}))
	selected_id: str | None = None
	error: MissionSyncError | None = None
	notice: str | None = None
	version: int = 0

	def get(self, mission_id: str) -> Mission | None:
		return self.missions.get(mission_id)

	def all(self) -> list[Mission]:
		return list(self.missions.values())


SubscriberCallback = Callable[[RegistrySnapshot], None]


def _merge_dataclass(current: Any, changes: Mapping[str, Any]) -> Any:
	"""Field-wise merge of a mapping into a frozen sub-record."""
	valid = {f.name for f in dataclasses.fields(current)}
	unknown = set(changes) - valid
	if unknown:
		raise ValueError(f"Unknown {type(current).__name__} fields: {sorted(unknown)}")
	return dataclasses.replace(current, **changes)


def _merge_progress(current: MissionProgress, changes: Mapping[str, Any] | MissionProgress) -> MissionProgress:
	if isinstance(changes, MissionProgress):
		return changes
	updates = dict(changes)
	usage = updates.get("context_usage")
	if isinstance(usage, Mapping):
		updates["context_usage"] = _merge_dataclass(current.context_usage, usage)
	elif usage is not None and not isinstance(usage, ContextUsage):
		raise ValueError(f"Invalid context_usage: {usage!r}")
	return _merge_dataclass(current, updates)


def _merge_cost(current: MissionCost, changes: Mapping[str, Any] | MissionCost) -> MissionCost:
	if isinstance(changes, MissionCost):
		return changes
	return _merge_dataclass(current, changes)


def is_cost_regression(mission: Mission, total_cost: float) -> bool:
	"""True if total_cost would lower a running mission's cost, which never decreases mid-run."""
	return mission.state == MissionState.RUNNING and total_cost < mission.cost.total_cost


def _union_checkpoints(
	existing: tuple[Checkpoint, ...], incoming: tuple[Checkpoint, ...],
) -> tuple[Checkpoint, ...]:
	known = {cp.id for cp in existing}
	extra = tuple(cp for cp in incoming if cp.id not in known)
	return existing + extra


class MissionRegistry:
	"""Keyed collection of missions plus pending-operation bookkeeping.

	Owns the error slot (last BackendError, read by notification UI), the
	notice slot (non-fatal info such as a cancelled control action), the
	bounded mission log and the current selection.
	"""

	def __init__(self, log_limit: int = LOG_HISTORY_LIMIT) -> None:
		self._missions: dict[str, Mission] = {}
		self._pending: dict[tuple[str, OperationKind], PendingOperation] = {}
		self._aliases: dict[str, str] = {}
		self._logs: deque[MissionLogEntry] = deque(maxlen=log_limit)
		self._selected_id: str | None = None
		self._error: MissionSyncError | None = None
		self._notice: str | None = None
		self._version = 0
		self._snapshot = RegistrySnapshot()
		self._subscribers: list[SubscriberCallback] = []

	# -- Reads --

	def get(self, mission_id: str) -> Mission | None:
		return self._missions.get(mission_id)

	def all(self) -> list[Mission]:
		"""Missions in insertion order."""
		return list(self._missions.values())

	def ids(self) -> list[str]:
		return list(self._missions)

	def index_of(self, mission_id: str) -> int:
		for i, key in enumerate(self._missions):
			if key == mission_id:
				return i
		return -1

	def resolve_id(self, mission_id: str) -> str:
		"""Follow local-id aliases to the confirmed server id."""
		seen: set[str] = set()
		while mission_id in self._aliases and mission_id not in seen:
			seen.add(mission_id)
			mission_id = self._aliases[mission_id]
		return mission_id

	def __len__(self) -> int:
		return len(self._missions)

	def __contains__(self, mission_id: object) -> bool:
		return mission_id in self._missions

	def __iter__(self) -> Iterator[Mission]:
		return iter(self.all())

	@property
	def selected_id(self) -> str | None:
		return self._selected_id

	@property
	def error(self) -> MissionSyncError | None:
		return self._error

	@property
	def notice(self) -> str | None:
		return self._notice

	@property
	def logs(self) -> list[MissionLogEntry]:
		return list(self._logs)

	@property
	def version(self) -> int:
		return self._version

	def snapshot(self) -> RegistrySnapshot:
		return self._snapshot

	# -- Subscriptions --

	def subscribe(self, callback: SubscriberCallback) -> Callable[[], None]:
		"""Register a callback for every change. Returns an unsubscribe function."""
		self._subscribers.append(callback)

		def unsubscribe() -> None:
			if callback in self._subscribers:
				self._subscribers.remove(callback)

		return unsubscribe

	def _commit(self, missions: dict[str, Mission] | None = None) -> None:
		if missions is not None:
			self._missions = missions
		self._version += 1
		self._snapshot = RegistrySnapshot(
			missions=MappingProxyType(self._missions),
			selected_id=self._selected_id,
			error=self._error,
			notice=self._notice,
			version=self._version,
		)
		for cb in list(self._subscribers):
			try:
				cb(self._snapshot)
			except Exception:
				logger.exception("Registry subscriber error")

	# -- Mission writes --

	def upsert(self, mission: Mission) -> Mission:
		"""Insert or replace a complete mission.

		For an existing id the state moves through the transition function
		(authoritatively), checkpoints are unioned in order, and updated_at
		becomes the later of existing and incoming. A running mission keeps its
		cost if the incoming total is lower. Identical content is a
		no-op.
		"""
		existing = self._missions.get(mission.id)
		if existing is None:
			self._commit({**self._missions, mission.id: mission})
			return mission

		merged = self._combine(existing, mission)
		if merged == existing:
			return existing
		missions = dict(self._missions)
		missions[mission.id] = merged
		self._commit(missions)
		return merged

	@staticmethod
	def _combine(existing: Mission, incoming: Mission) -> Mission:
		cost = incoming.cost
		if incoming.state == MissionState.RUNNING and is_cost_regression(existing, cost.total_cost):
			logger.debug("Keeping cost of running mission %s over lower incoming total", existing.id)
			cost = existing.cost
		base = dataclasses.replace(
			incoming,
			cost=cost,
			state=existing.state,
			error=existing.error,
			started_at=incoming.started_at or existing.started_at,
			completed_at=incoming.completed_at or existing.completed_at,
			checkpoints=_union_checkpoints(existing.checkpoints, incoming.checkpoints),
			created_at=existing.created_at,
			updated_at=existing.updated_at,
		)
		moved = state_machine.transition(
			base,
			incoming.state,
			authoritative=True,
			timestamp=incoming.updated_at,
			error=incoming.error,
		)
		return dataclasses.replace(
			moved,
			updated_at=max(existing.updated_at, incoming.updated_at, moved.updated_at),
		)

	def merge(
		self,
		mission_id: str,
		changes: Mapping[str, Any],
		*,
		updated_at: datetime | None = None,
	) -> Mission | None:
		"""Apply a partial update. Absent fields are kept.

		progress, progress.context_usage and cost accept mappings that merge
		field-wise into the current sub-record. Returns the resulting
		mission, or None if the id is unknown.
		"""
		existing = self._missions.get(mission_id)
		if existing is None:
			return None
		disallowed = set(changes) - MERGEABLE_FIELDS
		if disallowed:
			raise ValueError(f"Fields not mergeable: {sorted(disallowed)}")

		updates = dict(changes)
		if "progress" in updates:
			updates["progress"] = _merge_progress(existing.progress, updates["progress"])
		if "cost" in updates:
			updates["cost"] = _merge_cost(existing.cost, updates["cost"])
		if "spec_ids" in updates:
			updates["spec_ids"] = tuple(updates["spec_ids"])
		if "tags" in updates:
			updates["tags"] = frozenset(updates["tags"])

		candidate = dataclasses.replace(existing, **updates)
		if candidate == existing:
			logger.debug("No-op merge for mission %s", mission_id)
			return existing
		candidate = dataclasses.replace(
			candidate, updated_at=max(existing.updated_at, updated_at or _now()),
		)
		missions = dict(self._missions)
		missions[mission_id] = candidate
		self._commit(missions)
		return candidate

	def transition(
		self,
		mission_id: str,
		target: MissionState,
		*,
		authoritative: bool = False,
		timestamp: datetime | None = None,
		error: MissionError | None = None,
	) -> Mission | None:
		"""Move a mission through the state machine. Returns None if unknown."""
		existing = self._missions.get(mission_id)
		if existing is None:
			return None
		moved = state_machine.transition(
			existing, target, authoritative=authoritative, timestamp=timestamp, error=error,
		)
		if moved is existing:
			return existing
		missions = dict(self._missions)
		missions[mission_id] = moved
		self._commit(missions)
		return moved

	def append_checkpoint(self, mission_id: str, checkpoint: Checkpoint) -> bool:
		"""Append a checkpoint unless one with the same id is already recorded."""
		existing = self._missions.get(mission_id)
		if existing is None:
			return False
		if any(cp.id == checkpoint.id for cp in existing.checkpoints):
			return False
		updated = dataclasses.replace(
			existing,
			checkpoints=existing.checkpoints + (checkpoint,),
			updated_at=max(existing.updated_at, checkpoint.created_at),
		)
		missions = dict(self._missions)
		missions[mission_id] = updated
		self._commit(missions)
		return True

	def replace_id(self, old_id: str, mission: Mission) -> Mission:
		"""Atomically swap a local mission for its confirmed server entity.

		The new entity takes the old one's insertion position. If the server
		id is already present (its created event won the race) the two are
		combined there instead. Selection and pending operations follow.
		"""
		new_id = mission.id
		missions: dict[str, Mission] = {}
		placed = mission
		if new_id in self._missions and new_id != old_id:
			placed = self._combine(self._missions[new_id], mission)
			for key, value in self._missions.items():
				if key == old_id:
					continue
				missions[key] = placed if key == new_id else value
		else:
			inserted = False
			for key, value in self._missions.items():
				if key == old_id:
					missions[new_id] = mission
					inserted = True
				else:
					missions[key] = value
			if not inserted:
				missions[new_id] = mission

		if old_id != new_id:
			self._aliases[old_id] = new_id
			for (target, kind), op in list(self._pending.items()):
				if target == old_id:
					del self._pending[(target, kind)]
					op.target_id = new_id
					self._pending[(new_id, kind)] = op
			if self._selected_id == old_id:
				self._selected_id = new_id
		self._commit(missions)
		return placed

	def restore(self, mission: Mission, position: int = -1) -> None:
		"""Put back an exact pre-change snapshot (rollback path).

		Unlike upsert, nothing is merged and updated_at is not bumped.
		"""
		items = [(k, v) for k, v in self._missions.items() if k != mission.id]
		if position < 0 or position > len(items):
			position = len(items)
		items.insert(position, (mission.id, mission))
		self._commit(dict(items))

	def remove(self, mission_id: str) -> Mission | None:
		existing = self._missions.get(mission_id)
		if existing is None:
			return None
		missions = {k: v for k, v in self._missions.items() if k != mission_id}
		if self._selected_id == mission_id:
			self._selected_id = None
		self._commit(missions)
		return existing

	# -- Pending ledger --

	def track_pending(
		self,
		mission_id: str,
		kind: OperationKind,
		snapshot: Mission | None = None,
		applied: Mission | None = None,
		position: int = -1,
	) -> PendingOperation:
		key = (mission_id, kind)
		if key in self._pending:
			raise ValueError(f"Pending {kind.value} already tracked for {mission_id}")
		op = PendingOperation(
			target_id=mission_id,
			kind=kind,
			snapshot=snapshot,
			applied=applied,
			position=position,
		)
		self._pending[key] = op
		return op

	def get_pending(self, mission_id: str, kind: OperationKind) -> PendingOperation | None:
		return self._pending.get((mission_id, kind))

	def has_pending(self, mission_id: str, kind: OperationKind) -> bool:
		return (mission_id, kind) in self._pending

	def pending_for(self, mission_id: str) -> list[PendingOperation]:
		return [op for (target, _), op in self._pending.items() if target == mission_id]

	def all_pending(self) -> list[PendingOperation]:
		return list(self._pending.values())

	def clear_pending(self, op: PendingOperation) -> None:
		"""Drop a finished operation from the ledger."""
		key = (op.target_id, op.kind)
		if self._pending.get(key) is op:
			del self._pending[key]

	# -- Slots, logs, selection --

	def set_error(self, error: MissionSyncError) -> None:
		self._error = error
		self._commit()

	def dismiss_error(self) -> None:
		if self._error is None:
			return
		self._error = None
		self._commit()

	def set_notice(self, message: str) -> None:
		self._notice = message
		self._commit()

	def dismiss_notice(self) -> None:
		if self._notice is None:
			return
		self._notice = None
		self._commit()

	def append_log(self, entry: MissionLogEntry) -> bool:
		"""Append to the bounded log. Redelivered identical entries are ignored."""
		if entry in self._logs:
			return False
		self._logs.append(entry)
		self._commit()
		return True

	def select(self, mission_id: str | None) -> None:
		if mission_id is not None:
			mission_id = self.resolve_id(mission_id)
		if mission_id == self._selected_id:
			return
		self._selected_id = mission_id
		self._commit()

	def clear(self) -> None:
		"""Drop all missions, pending operations, logs, selection and slots."""
		self._pending.clear()
		self._aliases.clear()
		self._logs.clear()
		self._selected_id = None
		self._error = None
		self._notice = None
		self._commit({})
