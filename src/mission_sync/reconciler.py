"""Event reconciler: merges backend notifications into the registry.

Notifications are decoded once at this boundary into typed events. The
reconciler never awaits; each notification is applied synchronously and
every apply path is idempotent, so redelivery leaves the registry as a
single delivery would.
"""

from __future__ import annotations

import logging
from typing import Any

from mission_sync.errors import StaleEventError
from mission_sync.models import (
	MissionLogEntry,
	MissionState,
	OperationKind,
	_now,
)
from mission_sync.registry import MissionRegistry, is_cost_regression
from mission_sync.schemas import (
	MissionCheckpointed,
	MissionCostUpdated,
	MissionCreated,
	MissionDeleted,
	MissionEvent,
	MissionLogged,
	MissionPatchSchema,
	MissionProgressed,
	MissionStateChanged,
	MissionUpdated,
	decode_event,
)
from mission_sync.state_machine import CONTROL_TARGETS

logger = logging.getLogger(__name__)


class EventReconciler:
	"""Applies backend-pushed mission notifications to a MissionRegistry."""

	def __init__(self, registry: MissionRegistry) -> None:
		self._registry = registry

	def handle(self, name: str, payload: dict[str, Any]) -> bool:
		"""Decode and apply one raw notification. Returns True if applied.

		Unknown event names and invalid payloads are logged and dropped;
		nothing raised here reaches the channel.
		"""
		try:
			event = decode_event(name, payload)
		except ValueError as exc:
			logger.warning("Dropping undecodable event %s: %s", name, exc)
			return False
		return self.apply(event)

	def apply(self, event: MissionEvent) -> bool:
		try:
			self._check_live(event)
			return self._dispatch(event)
		except StaleEventError as exc:
			logger.debug("%s", exc)
			return False

	def _check_live(self, event: MissionEvent) -> None:
		mission_id = event.mission_id
		if self._registry.has_pending(mission_id, OperationKind.DELETE):
			raise StaleEventError(event.name, mission_id, "delete in flight")
		if isinstance(event, MissionCreated):
			return
		if mission_id not in self._registry:
			raise StaleEventError(event.name, mission_id, "unknown mission")

	def _dispatch(self, event: MissionEvent) -> bool:
		if isinstance(event, MissionCreated):
			return self._on_created(event)
		if isinstance(event, MissionUpdated):
			return self._on_updated(event)
		if isinstance(event, MissionDeleted):
			return self._registry.remove(event.mission_id) is not None
		if isinstance(event, MissionStateChanged):
			return self._on_state_changed(event)
		if isinstance(event, MissionProgressed):
			return self._merged(event.mission_id, {"progress": event.progress_changes()})
		if isinstance(event, MissionCostUpdated):
			return self._on_cost(event)
		if isinstance(event, MissionCheckpointed):
			return self._registry.append_checkpoint(event.mission_id, event.checkpoint.to_model())
		if isinstance(event, MissionLogged):
			return self._on_log(event)
		raise StaleEventError(event.name, event.mission_id, "no handler")

	def _merged(self, mission_id: str, changes: dict[str, Any]) -> bool:
		before = self._registry.get(mission_id)
		after = self._registry.merge(mission_id, changes)
		return after is not None and after is not before

	def _on_created(self, event: MissionCreated) -> bool:
		mission_id = event.mission_id
		if event.mission.id != mission_id:
			raise StaleEventError(event.name, mission_id, f"payload id {event.mission.id}")
		if mission_id not in self._registry:
			self._registry.upsert(event.mission.to_mission())
			return True
		# Redelivery or a create response that already landed: merge what was sent
		patch = MissionPatchSchema.model_validate(event.mission.model_dump(exclude_unset=True))
		return self._apply_patch(event, patch)

	def _on_updated(self, event: MissionUpdated) -> bool:
		update_op = self._registry.get_pending(event.mission_id, OperationKind.UPDATE)
		if update_op is not None:
			update_op.superseded = True
		return self._apply_patch(event, event.mission)

	def _apply_patch(self, event: MissionEvent, patch: MissionPatchSchema) -> bool:
		mission_id = event.mission_id
		before = self._registry.get(mission_id)
		changes = patch.field_changes()
		total = (changes.get("cost") or {}).get("total_cost")
		still_running = patch.state in (None, MissionState.RUNNING)
		if before is not None and total is not None and still_running and is_cost_regression(before, total):
			logger.debug("Dropping lower cost in %s for running mission %s", event.name, mission_id)
			del changes["cost"]
		if changes:
			self._registry.merge(mission_id, changes, updated_at=patch.updated_at)
		for checkpoint in patch.checkpoints or []:
			self._registry.append_checkpoint(mission_id, checkpoint.to_model())
		if patch.state is not None:
			self._set_state(
				mission_id,
				patch.state,
				timestamp=patch.updated_at,
				error=patch.error.to_model() if patch.error else None,
			)
		return self._registry.get(mission_id) is not before

	def _on_state_changed(self, event: MissionStateChanged) -> bool:
		before = self._registry.get(event.mission_id)
		self._set_state(
			event.mission_id,
			event.new_state,
			timestamp=event.timestamp,
			error=event.error.to_model() if event.error else None,
		)
		return self._registry.get(event.mission_id) is not before

	def _set_state(self, mission_id: str, state: MissionState, **kwargs: Any) -> None:
		"""Apply an authoritative state and cancel in-flight control commands."""
		self._registry.transition(mission_id, state, authoritative=True, **kwargs)
		for op in self._registry.pending_for(mission_id):
			if not op.kind.is_control or not op.in_flight:
				continue
			op.cancel()
			self._registry.clear_pending(op)
			target = CONTROL_TARGETS[op.kind]
			logger.info(
				"Backend moved %s to %s; cancelled pending %s",
				mission_id, state.value, op.kind.value,
			)
			kind = op.kind.value.capitalize()
			if target != state:
				self._registry.set_notice(f"{kind} was superseded: mission is now {state.value}")
			else:
				self._registry.set_notice(f"{kind} already applied by backend: mission is now {state.value}")

	def _on_cost(self, event: MissionCostUpdated) -> bool:
		mission = self._registry.get(event.mission_id)
		changes = event.cost_changes()
		total = changes.get("total_cost")
		if mission is not None and total is not None and is_cost_regression(mission, total):
			raise StaleEventError(
				event.name,
				event.mission_id,
				f"cost {total} below current {mission.cost.total_cost}",
			)
		return self._merged(event.mission_id, {"cost": changes})

	def _on_log(self, event: MissionLogged) -> bool:
		if event.timestamp is None:
			# Without a timestamp a redelivery is only recognisable by content
			for entry in reversed(self._registry.logs):
				if entry.mission_id != event.mission_id:
					continue
				if (entry.level, entry.message) == (event.level, event.message):
					return False
				break
		return self._registry.append_log(MissionLogEntry(
			mission_id=event.mission_id,
			level=event.level,
			message=event.message,
			timestamp=event.timestamp or _now(),
		))
