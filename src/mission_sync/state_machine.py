"""Mission state machine.

Local edges: idle -> running -> {paused, complete, error, redlined},
paused -> {running, error}. complete/error/redlined are terminal for the
entity; a restart creates a new mission instead of reviving this one.
Backend-reported transitions are authoritative and may take any edge.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime

from mission_sync.constants import ABORTED_ERROR_CODE
from mission_sync.models import Mission, MissionError, MissionState, OperationKind, _now

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[MissionState, frozenset[MissionState]] = {
	MissionState.IDLE: frozenset({MissionState.RUNNING}),
	MissionState.RUNNING: frozenset({
		MissionState.PAUSED,
		MissionState.COMPLETE,
		MissionState.ERROR,
		MissionState.REDLINED,
	}),
	MissionState.PAUSED: frozenset({MissionState.RUNNING, MissionState.ERROR}),
	MissionState.COMPLETE: frozenset(),
	MissionState.ERROR: frozenset(),
	MissionState.REDLINED: frozenset(),
}

# Target state reached when a control command is confirmed
CONTROL_TARGETS: dict[OperationKind, MissionState] = {
	OperationKind.START: MissionState.RUNNING,
	OperationKind.PAUSE: MissionState.PAUSED,
	OperationKind.RESUME: MissionState.RUNNING,
	OperationKind.ABORT: MissionState.ERROR,
}


def can_transition(current: MissionState, target: MissionState) -> bool:
	return target in ALLOWED_TRANSITIONS[current]


def transition(
	mission: Mission,
	target: MissionState,
	*,
	authoritative: bool = False,
	timestamp: datetime | None = None,
	error: MissionError | None = None,
) -> Mission:
	"""Return a copy of mission moved to target, or mission itself if rejected.

	Local transitions outside ALLOWED_TRANSITIONS are rejected and logged.
	Authoritative transitions always apply. Re-entering the current state is
	a no-op unless it carries a new error record.
	"""
	if mission.state == target and (error is None or error == mission.error):
		return mission
	if not authoritative and not can_transition(mission.state, target):
		logger.warning(
			"Rejected transition %s -> %s for mission %s",
			mission.state.value, target.value, mission.id,
		)
		return mission

	when = timestamp or _now()
	changes: dict[str, object] = {"state": target}
	if target == MissionState.ERROR:
		changes["error"] = error if error is not None else mission.error
	else:
		changes["error"] = None
	if target == MissionState.RUNNING and mission.started_at is None:
		changes["started_at"] = when
	if target.is_terminal and mission.completed_at is None:
		changes["completed_at"] = when
	elif not target.is_terminal:
		changes["completed_at"] = None
	changes["updated_at"] = max(mission.updated_at, when)
	return dataclasses.replace(mission, **changes)  # type: ignore[arg-type]


def abort_error() -> MissionError:
	return MissionError(code=ABORTED_ERROR_CODE, message="Mission aborted by user")


@dataclass(frozen=True)
class ControlState:
	"""Which control actions the UI may offer for a mission."""

	can_start: bool = False
	can_pause: bool = False
	can_resume: bool = False
	can_abort: bool = False
	can_restart: bool = False

	def allows(self, kind: OperationKind) -> bool:
		return {
			OperationKind.START: self.can_start,
			OperationKind.PAUSE: self.can_pause,
			OperationKind.RESUME: self.can_resume,
			OperationKind.ABORT: self.can_abort,
		}.get(kind, False)


def control_state(mission: Mission | None) -> ControlState:
	"""Derive the allowed control actions. Unconfirmed missions allow none."""
	if mission is None or mission.is_local:
		return ControlState()
	state = mission.state
	return ControlState(
		can_start=state == MissionState.IDLE,
		can_pause=state == MissionState.RUNNING,
		can_resume=state == MissionState.PAUSED,
		can_abort=state in (MissionState.RUNNING, MissionState.PAUSED),
		can_restart=state.is_terminal,
	)
