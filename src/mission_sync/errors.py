"""Error taxonomy for mission synchronization."""

from __future__ import annotations


class MissionSyncError(Exception):
	"""Base class for every error raised by mission_sync."""


class PreconditionError(MissionSyncError):
	"""Local validation failed; no backend round trip was attempted."""

	def __init__(self, message: str, mission_id: str = "") -> None:
		super().__init__(message)
		self.mission_id = mission_id


class ConflictError(MissionSyncError):
	"""An operation of the same kind is already in flight for this mission."""

	def __init__(self, mission_id: str, kind: str) -> None:
		super().__init__(f"A '{kind}' operation is already in flight for mission {mission_id}")
		self.mission_id = mission_id
		self.kind = kind


class BackendError(MissionSyncError):
	"""A command round trip failed (transport, timeout or backend rejection)."""

	def __init__(self, command: str, message: str, mission_id: str = "") -> None:
		super().__init__(f"{command} failed: {message}")
		self.command = command
		self.mission_id = mission_id


class StaleEventError(MissionSyncError):
	"""A notification referenced a mission that cannot accept it. Never surfaced."""

	def __init__(self, event: str, mission_id: str, reason: str) -> None:
		super().__init__(f"{event} for {mission_id} discarded: {reason}")
		self.event = event
		self.mission_id = mission_id
		self.reason = reason
