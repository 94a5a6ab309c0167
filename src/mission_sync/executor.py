"""Command executor: optimistic mutations with confirm-or-rollback.

Every operation follows one template: check local preconditions, apply
the speculative change and record a pending operation, invoke the backend
command, then confirm or roll back. Preconditions and conflicts raise
before the first await, so a rejected call never touches the registry.
A cancelled call rolls back like a failed one but is not reported.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from mission_sync import state_machine
from mission_sync.channel import EventChannel
from mission_sync.constants import DEFAULT_COMMAND_TIMEOUT
from mission_sync.errors import BackendError, ConflictError, PreconditionError
from mission_sync.models import (
	Mission,
	MissionInput,
	MissionUpdate,
	OperationKind,
	PendingOperation,
	PendingStatus,
)
from mission_sync.registry import MissionRegistry
from mission_sync.schemas import MissionInputSchema, decode_mission, decode_mission_list

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CommandExecutor:
	"""Issues mission commands against an EventChannel."""

	def __init__(
		self,
		registry: MissionRegistry,
		channel: EventChannel,
		timeout: float = DEFAULT_COMMAND_TIMEOUT,
	) -> None:
		self._registry = registry
		self._channel = channel
		self._timeout = timeout

	# -- Plumbing --

	async def _call(self, command: str, args: Any, mission_id: str = "") -> Any:
		"""Invoke a command; every failure mode comes back as BackendError."""
		try:
			return await asyncio.wait_for(self._channel.invoke(command, args), timeout=self._timeout)
		except BackendError as exc:
			if not exc.mission_id:
				exc.mission_id = mission_id
			raise
		except asyncio.TimeoutError as exc:
			raise BackendError(command, f"timed out after {self._timeout}s", mission_id) from exc
		except Exception as exc:
			raise BackendError(command, str(exc) or type(exc).__name__, mission_id) from exc

	@staticmethod
	def _decode(command: str, decoder: Callable[[Any], T], data: Any, mission_id: str = "") -> T:
		try:
			return decoder(data)
		except ValueError as exc:
			raise BackendError(command, f"malformed response: {exc}", mission_id) from exc

	def _fail(self, op: PendingOperation, exc: BackendError) -> None:
		if op.in_flight:
			op.roll_back()
		self._registry.clear_pending(op)
		logger.warning("%s for mission %s rolled back: %s", op.kind.value, op.target_id, exc)
		self._registry.set_error(exc)

	def _abandon(self, op: PendingOperation) -> None:
		"""Drop an operation whose task was cancelled. Not reported as an error."""
		if op.in_flight:
			op.cancel()
		self._registry.clear_pending(op)
		logger.info("%s for mission %s abandoned: task cancelled", op.kind.value, op.target_id)

	def _confirm(self, op: PendingOperation) -> None:
		op.confirm()
		self._registry.clear_pending(op)
		self._registry.dismiss_error()
		logger.info("%s confirmed for mission %s", op.kind.value, op.target_id)

	def _check_conflict(self, mission_id: str, kind: OperationKind) -> None:
		if self._registry.has_pending(mission_id, kind):
			raise ConflictError(mission_id, kind.value)

	def _require_confirmed(self, mission_id: str, action: str) -> Mission:
		mission = self._registry.get(mission_id)
		if mission is None:
			raise PreconditionError(f"Cannot {action}: unknown mission {mission_id}", mission_id)
		if mission.is_local:
			raise PreconditionError(
				f"Cannot {action}: mission {mission_id} is not confirmed by the backend yet",
				mission_id,
			)
		return mission

	# -- Lifecycle --

	async def load(self, options: dict[str, Any] | None = None) -> list[Mission]:
		"""Fetch missions from the backend and upsert them into the registry.

		Missions with a pending delete are skipped so a reload cannot
		resurrect them.
		"""
		command = "mission.list"
		try:
			result = await self._call(command, options or {})
			missions = self._decode(command, decode_mission_list, result)
		except BackendError as exc:
			logger.warning("Mission list failed: %s", exc)
			self._registry.set_error(exc)
			raise

		loaded: list[Mission] = []
		for mission in missions:
			if self._registry.has_pending(mission.id, OperationKind.DELETE):
				continue
			loaded.append(self._registry.upsert(mission))
		self._registry.dismiss_error()
		return loaded

	async def create(self, data: MissionInput) -> Mission:
		"""Create a mission; it appears immediately under a local id."""
		if not data.title.strip():
			raise PreconditionError("Mission title must not be empty")

		local = data.to_mission()
		self._registry.upsert(local)
		op = self._registry.track_pending(local.id, OperationKind.CREATE, applied=local)

		command = "mission.create"
		try:
			result = await self._call(command, MissionInputSchema.from_input(data).to_wire(), local.id)
			confirmed = self._decode(command, decode_mission, result, local.id)
		except BackendError as exc:
			self._registry.remove(op.target_id)
			self._fail(op, exc)
			raise
		except asyncio.CancelledError:
			self._registry.remove(op.target_id)
			self._abandon(op)
			raise

		placed = self._registry.replace_id(op.target_id, confirmed)
		self._confirm(op)
		return placed

	async def restart(self, mission_id: str) -> Mission:
		"""Spawn a new mission from a finished one's configuration."""
		mission_id = self._registry.resolve_id(mission_id)
		mission = self._require_confirmed(mission_id, "restart")
		if not state_machine.control_state(mission).can_restart:
			raise PreconditionError(
				f"Cannot restart mission {mission_id} in state {mission.state.value}", mission_id,
			)
		return await self.create(MissionInput.from_mission(mission))

	async def update(self, mission_id: str, update: MissionUpdate) -> Mission | None:
		"""Edit a mission's configuration optimistically.

		Returns the mission as it stands once the command resolves, or None
		if it was deleted meanwhile.
		"""
		mission_id = self._registry.resolve_id(mission_id)
		self._check_conflict(mission_id, OperationKind.UPDATE)
		existing = self._require_confirmed(mission_id, "update")
		changes = update.changes()
		if not changes:
			raise PreconditionError("Nothing to update", mission_id)

		applied = self._registry.merge(mission_id, changes)
		op = self._registry.track_pending(
			mission_id, OperationKind.UPDATE, snapshot=existing, applied=applied,
		)

		command = "mission.update"
		args = {"id": mission_id, "input": MissionInputSchema.from_input(update).to_wire()}
		try:
			await self._call(command, args, mission_id)
		except BackendError as exc:
			self._rollback_update(op, changes)
			self._fail(op, exc)
			raise
		except asyncio.CancelledError:
			self._rollback_update(op, changes)
			self._abandon(op)
			raise

		self._confirm(op)
		return self._registry.get(mission_id)

	def _rollback_update(self, op: PendingOperation, changes: dict[str, Any]) -> None:
		current = self._registry.get(op.target_id)
		if current is None or op.snapshot is None:
			logger.info("Mission %s gone before update rollback", op.target_id)
			return
		if op.superseded:
			logger.info("Update of %s superseded by backend; keeping backend state", op.target_id)
			return
		if current == op.applied:
			self._registry.restore(op.snapshot, self._registry.index_of(op.target_id))
			return
		# Other events landed meanwhile: revert only fields still holding our values
		reverts = {
			name: getattr(op.snapshot, name)
			for name in changes
			if op.applied is not None and getattr(current, name) == getattr(op.applied, name)
		}
		if reverts:
			self._registry.merge(op.target_id, reverts)

	async def delete(self, mission_id: str) -> None:
		"""Remove a mission optimistically; it reappears in place on failure."""
		mission_id = self._registry.resolve_id(mission_id)
		self._check_conflict(mission_id, OperationKind.DELETE)
		existing = self._require_confirmed(mission_id, "delete")

		position = self._registry.index_of(mission_id)
		op = self._registry.track_pending(
			mission_id, OperationKind.DELETE, snapshot=existing, position=position,
		)
		self._registry.remove(mission_id)

		try:
			await self._call("mission.delete", {"id": mission_id}, mission_id)
		except BackendError as exc:
			if mission_id not in self._registry:
				self._registry.restore(existing, position)
			self._fail(op, exc)
			raise
		except asyncio.CancelledError:
			if mission_id not in self._registry:
				self._registry.restore(existing, position)
			self._abandon(op)
			raise

		self._confirm(op)

	# -- Control --

	async def start(self, mission_id: str) -> Mission | None:
		return await self._control(OperationKind.START, mission_id)

	async def pause(self, mission_id: str) -> Mission | None:
		return await self._control(OperationKind.PAUSE, mission_id)

	async def resume(self, mission_id: str) -> Mission | None:
		return await self._control(OperationKind.RESUME, mission_id)

	async def abort(self, mission_id: str) -> Mission | None:
		return await self._control(OperationKind.ABORT, mission_id)

	async def _control(self, kind: OperationKind, mission_id: str) -> Mission | None:
		"""Run a control command. No optimistic state change is applied.

		On success the matching local transition is attempted; the state
		machine rejects it if the backend already moved the mission
		somewhere it cannot leave. If a backend state-changed event cancels
		the operation while in flight, its outcome is dropped.
		"""
		mission_id = self._registry.resolve_id(mission_id)
		self._check_conflict(mission_id, kind)
		mission = self._require_confirmed(mission_id, kind.value)
		if not state_machine.control_state(mission).allows(kind):
			raise PreconditionError(
				f"Cannot {kind.value} mission {mission_id} in state {mission.state.value}",
				mission_id,
			)

		op = self._registry.track_pending(mission_id, kind)
		try:
			await self._call(f"mission.{kind.value}", {"id": mission_id}, mission_id)
		except BackendError as exc:
			if op.status == PendingStatus.CANCELLED:
				self._registry.clear_pending(op)
				logger.info("Cancelled %s for %s failed late: %s", kind.value, mission_id, exc)
				return self._registry.get(op.target_id)
			self._fail(op, exc)
			raise
		except asyncio.CancelledError:
			self._abandon(op)
			raise

		if op.status == PendingStatus.CANCELLED:
			self._registry.clear_pending(op)
			logger.info("%s for %s resolved after backend state change; ignored", kind.value, mission_id)
			return self._registry.get(op.target_id)

		self._confirm(op)
		target = state_machine.CONTROL_TARGETS[kind]
		error = state_machine.abort_error() if kind == OperationKind.ABORT else None
		return self._registry.transition(op.target_id, target, error=error)
