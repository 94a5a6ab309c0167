"""Derived views over the mission registry.

Pure projections (filtered/sorted list, aggregate statistics, selected
mission) plus MissionViews, which caches them and recomputes only when the
registry notifies or a filter/sort parameter changes. Nothing here writes
to the registry.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from mission_sync.models import Mission, MissionState
from mission_sync.registry import MissionRegistry, RegistrySnapshot

log = logging.getLogger(__name__)

_STATE_ORDER = {state: i for i, state in enumerate(MissionState)}


class SortKey(str, Enum):
	CREATED_AT = "created_at"
	UPDATED_AT = "updated_at"
	TITLE = "title"
	STATE = "state"


@dataclass(frozen=True)
class MissionFilter:
	"""Filter predicate. Empty criteria match everything."""

	states: frozenset[MissionState] = frozenset()
	tags: frozenset[str] = frozenset()
	text: str = ""  # case-insensitive, matched against title and prompt
	backend_id: str = ""

	def matches(self, mission: Mission) -> bool:
		if self.states and mission.state not in self.states:
			return False
		if self.tags and not (self.tags & mission.tags):
			return False
		if self.backend_id and mission.backend_id != self.backend_id:
			return False
		if self.text:
			needle = self.text.casefold()
			if needle not in mission.title.casefold() and needle not in mission.prompt.casefold():
				return False
		return True


@dataclass(frozen=True)
class MissionSort:
	key: SortKey = SortKey.CREATED_AT
	descending: bool = False


@dataclass(frozen=True)
class MissionStats:
	"""Aggregate statistics across all missions in the registry."""

	counts: dict[MissionState, int] = field(default_factory=dict)
	total: int = 0
	total_cost: float = 0.0
	near_limit: int = 0  # context usage in the danger or critical zone

	@property
	def active(self) -> int:
		"""Missions currently running or paused."""
		return self.counts.get(MissionState.RUNNING, 0) + self.counts.get(MissionState.PAUSED, 0)


def filter_missions(missions: Iterable[Mission], criteria: MissionFilter) -> list[Mission]:
	return [m for m in missions if criteria.matches(m)]


def _sort_value(mission: Mission, key: SortKey) -> object:
	if key == SortKey.TITLE:
		return mission.title.casefold()
	if key == SortKey.STATE:
		return _STATE_ORDER[mission.state]
	if key == SortKey.UPDATED_AT:
		return mission.updated_at
	return mission.created_at


def sort_missions(missions: Iterable[Mission], order: MissionSort) -> list[Mission]:
	"""Sort by one key; ties keep insertion order in both directions."""
	# sorted() is stable and keeps equal items in input order even with reverse=True
	return sorted(missions, key=lambda m: _sort_value(m, order.key), reverse=order.descending)


def compute_stats(
	missions: Sequence[Mission], thresholds: dict[str, float] | None = None,
) -> MissionStats:
	counts = {state: 0 for state in MissionState}
	near_limit = 0
	for mission in missions:
		counts[mission.state] += 1
		if mission.progress.context_usage.near_limit_for(thresholds):
			near_limit += 1
	return MissionStats(
		counts=counts,
		total=len(missions),
		total_cost=sum(m.cost.total_cost for m in missions),
		near_limit=near_limit,
	)


def selected_mission(snapshot: RegistrySnapshot) -> Mission | None:
	if snapshot.selected_id is None:
		return None
	return snapshot.get(snapshot.selected_id)


@dataclass(frozen=True)
class MissionViewState:
	"""Everything a presentation layer renders, computed from one registry version."""

	version: int = 0
	missions: list[Mission] = field(default_factory=list)
	stats: MissionStats = field(default_factory=MissionStats)
	selected: Mission | None = None
	filter: MissionFilter = field(default_factory=MissionFilter)
	sort: MissionSort = field(default_factory=MissionSort)


class MissionViews:
	"""Cached derived views kept current by registry notifications."""

	def __init__(self, registry: MissionRegistry, thresholds: dict[str, float] | None = None) -> None:
		self._registry = registry
		self._thresholds = thresholds
		self._filter = MissionFilter()
		self._sort = MissionSort()
		self._callbacks: list[Callable[[MissionViewState], None]] = []
		self._state = self._build(registry.snapshot())
		self._recomputes = 0
		self._unsubscribe = registry.subscribe(self._on_change)

	@property
	def state(self) -> MissionViewState:
		return self._state

	@property
	def recompute_count(self) -> int:
		return self._recomputes

	def subscribe(self, callback: Callable[[MissionViewState], None]) -> Callable[[], None]:
		"""Register a callback for recomputed views. Returns an unsubscribe function."""
		self._callbacks.append(callback)

		def unsubscribe() -> None:
			if callback in self._callbacks:
				self._callbacks.remove(callback)

		return unsubscribe

	def set_filter(self, criteria: MissionFilter) -> None:
		if criteria == self._filter:
			return
		self._filter = criteria
		self._refresh(self._registry.snapshot())

	def set_sort(self, order: MissionSort) -> None:
		if order == self._sort:
			return
		self._sort = order
		self._refresh(self._registry.snapshot())

	def close(self) -> None:
		self._unsubscribe()
		self._callbacks.clear()

	def _on_change(self, snapshot: RegistrySnapshot) -> None:
		self._refresh(snapshot)

	def _refresh(self, snapshot: RegistrySnapshot) -> None:
		self._state = self._build(snapshot)
		self._recomputes += 1
		for cb in list(self._callbacks):
			try:
				cb(self._state)
			except Exception:
				log.exception("View callback error")

	def _build(self, snapshot: RegistrySnapshot) -> MissionViewState:
		everything = snapshot.all()
		visible = sort_missions(filter_missions(everything, self._filter), self._sort)
		return MissionViewState(
			version=snapshot.version,
			missions=visible,
			stats=compute_stats(everything, self._thresholds),
			selected=selected_mission(snapshot),
			filter=self._filter,
			sort=self._sort,
		)
