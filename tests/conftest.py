"""Shared pytest fixtures and factory functions for mission_sync tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import pytest

from mission_sync.channel import EventChannel
from mission_sync.executor import CommandExecutor
from mission_sync.models import Mission, MissionState
from mission_sync.reconciler import EventReconciler
from mission_sync.registry import MissionRegistry

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeChannel(EventChannel):
	"""Scriptable EventChannel.

	results maps a command to a value (or a callable taking args); errors
	maps a command to the exception to raise. hold(command) makes the next
	call to that command wait on a future the test resolves.
	"""

	def __init__(self) -> None:
		super().__init__()
		self.calls: list[tuple[str, Any]] = []
		self.results: dict[str, Any] = {}
		self.errors: dict[str, Exception] = {}
		self._holds: dict[str, asyncio.Future[Any]] = {}

	def hold(self, command: str) -> asyncio.Future[Any]:
		fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
		self._holds[command] = fut
		return fut

	async def invoke(self, command: str, args: Any = None) -> Any:
		self.calls.append((command, args))
		fut = self._holds.pop(command, None)
		if fut is not None:
			return await fut
		if command in self.errors:
			raise self.errors[command]
		result = self.results.get(command)
		return result(args) if callable(result) else result

	def emit(self, event: str, payload: dict[str, Any]) -> None:
		self.dispatch(event, payload)

	def commands(self) -> list[str]:
		return [c for c, _ in self.calls]


def make_mission(**overrides: Any) -> Mission:
	"""Create a Mission with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"id": "m1",
		"title": "Test Mission",
		"prompt": "Test prompt",
		"backend_id": "claude-sonnet",
		"created_at": T0,
		"updated_at": T0,
	}
	defaults.update(overrides)
	return Mission(**defaults)


def wire_mission(**overrides: Any) -> dict[str, Any]:
	"""A backend mission payload in camelCase wire format."""
	data: dict[str, Any] = {
		"id": "srv-1",
		"state": "idle",
		"title": "T",
		"prompt": "P",
		"specIds": [],
		"backendId": "b1",
		"mode": "agentic",
		"tags": [],
		"cost": {"inputCost": 0, "outputCost": 0, "totalCost": 0, "currency": "USD"},
		"checkpoints": [],
		"createdAt": T0.isoformat(),
		"updatedAt": T0.isoformat(),
	}
	data.update(overrides)
	return data


async def settle() -> None:
	"""Let pending tasks run up to their next suspension point."""
	for _ in range(3):
		await asyncio.sleep(0)


@pytest.fixture()
def registry() -> MissionRegistry:
	return MissionRegistry()


@pytest.fixture()
def channel() -> FakeChannel:
	return FakeChannel()


@pytest.fixture()
def executor(registry: MissionRegistry, channel: FakeChannel) -> CommandExecutor:
	return CommandExecutor(registry, channel, timeout=1.0)


@pytest.fixture()
def reconciler(registry: MissionRegistry) -> EventReconciler:
	return EventReconciler(registry)


@pytest.fixture()
def running(registry: MissionRegistry) -> Mission:
	"""A confirmed running mission m1 already in the registry."""
	mission = make_mission(state=MissionState.RUNNING, started_at=T0)
	registry.upsert(mission)
	return mission
