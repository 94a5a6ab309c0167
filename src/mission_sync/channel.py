"""Event channel: the command/notification transport to the mission backend.

EventChannel is the boundary the engine depends on; tests inject fakes.
HttpEventChannel talks to a backend exposing POST /invoke and a
cursor-based GET /events feed, using an async httpx client.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

import httpx

from mission_sync.constants import DEFAULT_COMMAND_TIMEOUT, DEFAULT_POLL_INTERVAL
from mission_sync.errors import BackendError

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, dict[str, Any]], None]


class EventChannel(ABC):
	"""Abstract bidirectional command/notification transport."""

	def __init__(self) -> None:
		self._handlers: list[EventHandler] = []

	@abstractmethod
	async def invoke(self, command: str, args: Any = None) -> Any:
		"""Send a command and return the backend's result. Raises on failure."""

	def on_event(self, handler: EventHandler) -> Callable[[], None]:
		"""Register a notification handler. Returns an unsubscribe function."""
		self._handlers.append(handler)

		def unsubscribe() -> None:
			if handler in self._handlers:
				self._handlers.remove(handler)

		return unsubscribe

	def dispatch(self, event: str, payload: dict[str, Any]) -> None:
		"""Deliver one notification to every handler, in registration order."""
		for handler in list(self._handlers):
			try:
				handler(event, payload)
			except Exception:
				logger.exception("Event handler error for %s", event)


class HttpEventChannel(EventChannel):
	"""EventChannel over HTTP with a polled notification feed."""

	def __init__(
		self,
		base_url: str,
		timeout: float = DEFAULT_COMMAND_TIMEOUT,
		client: httpx.AsyncClient | None = None,
	) -> None:
		super().__init__()
		self._base_url = base_url.rstrip("/")
		self._timeout = timeout
		self._client = client
		self._cursor = 0
		self._poll_task: asyncio.Task[None] | None = None

	@property
	def cursor(self) -> int:
		return self._cursor

	async def _ensure_client(self) -> httpx.AsyncClient:
		if self._client is None:
			self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
		return self._client

	async def invoke(self, command: str, args: Any = None) -> Any:
		client = await self._ensure_client()
		response = await client.post("/invoke", json={"command": command, "args": args})
		response.raise_for_status()
		body = response.json()
		if not isinstance(body, dict):
			raise BackendError(command, f"malformed response: {body!r}")
		if body.get("error"):
			raise BackendError(command, str(body["error"]))
		return body.get("result")

	async def poll_events(self) -> int:
		"""Fetch notifications after the current cursor and dispatch them.

		Returns the number of feed entries consumed; malformed entries are skipped.
		"""
		client = await self._ensure_client()
		response = await client.get("/events", params={"cursor": self._cursor})
		response.raise_for_status()
		body = response.json()
		if not isinstance(body, dict) or not isinstance(body.get("events", []), list):
			raise ValueError(f"Malformed event feed: {body!r:.200}")
		events = body.get("events", [])
		for item in events:
			if not isinstance(item, dict):
				logger.warning("Skipping malformed event entry: %r", item)
				continue
			payload = item.get("payload") or {}
			if not isinstance(payload, dict):
				logger.warning("Skipping event %s with non-object payload", item.get("event"))
				continue
			self.dispatch(str(item.get("event", "")), payload)
		self._cursor = int(body.get("cursor", self._cursor + len(events)))
		return len(events)

	def start_polling(self, interval: float = DEFAULT_POLL_INTERVAL) -> None:
		if self._poll_task is None or self._poll_task.done():
			self._poll_task = asyncio.create_task(self._poll_loop(interval))

	async def _poll_loop(self, interval: float) -> None:
		while True:
			try:
				await self.poll_events()
			except httpx.HTTPError as exc:
				logger.warning("Event poll failed: %s", exc)
			except Exception:
				logger.exception("Event poll failed")
			await asyncio.sleep(interval)

	async def close(self) -> None:
		if self._poll_task is not None:
			self._poll_task.cancel()
			try:
				await self._poll_task
			except asyncio.CancelledError:
				pass
			self._poll_task = None
		if self._client is not None:
			await self._client.aclose()
			self._client = None
