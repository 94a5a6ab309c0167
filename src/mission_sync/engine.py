"""Wiring for the mission synchronization engine.

MissionSyncEngine owns one registry and builds the executor, reconciler and
views around an injected EventChannel. Nothing is module-global; tests and
applications construct as many engines as they need.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from mission_sync.channel import EventChannel, HttpEventChannel
from mission_sync.config import SyncConfig
from mission_sync.executor import CommandExecutor
from mission_sync.reconciler import EventReconciler
from mission_sync.registry import MissionRegistry
from mission_sync.views import MissionViews

logger = logging.getLogger(__name__)


class MissionSyncEngine:
	"""Registry + executor + reconciler + views bound to one channel."""

	def __init__(self, channel: EventChannel, config: SyncConfig | None = None) -> None:
		self.config = config or SyncConfig()
		self.channel = channel
		self.registry = MissionRegistry(log_limit=self.config.registry.log_limit)
		self.executor = CommandExecutor(
			self.registry, channel, timeout=self.config.channel.command_timeout,
		)
		self.reconciler = EventReconciler(self.registry)
		self.views = MissionViews(self.registry, thresholds=self.config.context.thresholds())
		self._unsubscribe: Callable[[], None] | None = None

	@classmethod
	def over_http(cls, config: SyncConfig) -> MissionSyncEngine:
		channel = HttpEventChannel(
			config.channel.base_url, timeout=config.channel.command_timeout,
		)
		return cls(channel, config)

	@property
	def connected(self) -> bool:
		return self._unsubscribe is not None

	async def start(self, options: dict[str, Any] | None = None) -> None:
		"""Subscribe to notifications, then hydrate the registry from mission.list.

		Subscribing first means notifications racing the initial load are
		reconciled rather than lost.
		"""
		if self._unsubscribe is None:
			self._unsubscribe = self.channel.on_event(self.reconciler.handle)
		await self.executor.load(options)
		if isinstance(self.channel, HttpEventChannel):
			self.channel.start_polling(self.config.channel.poll_interval)
		logger.info("Mission sync started with %d missions", len(self.registry))

	async def close(self) -> None:
		if self._unsubscribe is not None:
			self._unsubscribe()
			self._unsubscribe = None
		self.views.close()
		if isinstance(self.channel, HttpEventChannel):
			await self.channel.close()
