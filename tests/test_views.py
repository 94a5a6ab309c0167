"""Tests for derived mission views."""

from __future__ import annotations

from datetime import timedelta

from conftest import T0, make_mission

from mission_sync.models import ContextUsage, MissionCost, MissionProgress, MissionState
from mission_sync.registry import MissionRegistry
from mission_sync.views import (
	MissionFilter,
	MissionSort,
	MissionViews,
	MissionViewState,
	SortKey,
	compute_stats,
	filter_missions,
	sort_missions,
)


def _seed(registry: MissionRegistry) -> None:
	registry.upsert(make_mission(id="a", title="Alpha", state=MissionState.RUNNING, created_at=T0))
	registry.upsert(make_mission(
		id="b", title="bravo", state=MissionState.IDLE, created_at=T0 + timedelta(minutes=1), tags=frozenset({"x"}),
	))
	registry.upsert(make_mission(
		id="c", title="Charlie", state=MissionState.RUNNING, created_at=T0 + timedelta(minutes=2),
	))


class TestFilter:
	def test_state_filter(self, registry: MissionRegistry) -> None:
		_seed(registry)
		result = filter_missions(registry.all(), MissionFilter(states=frozenset({MissionState.RUNNING})))
		assert [m.id for m in result] == ["a", "c"]

	def test_text_filter_is_case_insensitive(self, registry: MissionRegistry) -> None:
		_seed(registry)
		registry.upsert(make_mission(id="d", title="Delta", prompt="refactor the BRAVO module"))
		result = filter_missions(registry.all(), MissionFilter(text="Bravo"))
		assert [m.id for m in result] == ["b", "d"]

	def test_tag_and_backend_filter(self, registry: MissionRegistry) -> None:
		_seed(registry)
		registry.upsert(make_mission(id="d", backend_id="other", tags=frozenset({"x"})))
		assert [m.id for m in filter_missions(registry.all(), MissionFilter(tags=frozenset({"x"})))] == ["b", "d"]
		criteria = MissionFilter(tags=frozenset({"x"}), backend_id="other")
		assert [m.id for m in filter_missions(registry.all(), criteria)] == ["d"]

	def test_empty_filter_matches_all(self, registry: MissionRegistry) -> None:
		_seed(registry)
		assert len(filter_missions(registry.all(), MissionFilter())) == 3


class TestSort:
	def test_by_title(self, registry: MissionRegistry) -> None:
		_seed(registry)
		result = sort_missions(registry.all(), MissionSort(key=SortKey.TITLE, descending=True))
		assert [m.id for m in result] == ["c", "b", "a"]

	def test_ties_keep_insertion_order(self, registry: MissionRegistry) -> None:
		for mid in ("x", "y", "z"):
			registry.upsert(make_mission(id=mid))
		ascending = sort_missions(registry.all(), MissionSort(key=SortKey.CREATED_AT))
		descending = sort_missions(registry.all(), MissionSort(key=SortKey.CREATED_AT, descending=True))
		assert [m.id for m in ascending] == ["x", "y", "z"]
		assert [m.id for m in descending] == ["x", "y", "z"]

	def test_by_state_follows_lifecycle(self, registry: MissionRegistry) -> None:
		_seed(registry)
		result = sort_missions(registry.all(), MissionSort(key=SortKey.STATE))
		assert [m.id for m in result] == ["b", "a", "c"]


class TestStats:
	def test_counts_and_cost(self) -> None:
		missions = [
			make_mission(id="a", state=MissionState.RUNNING, cost=MissionCost(total_cost=1.25)),
			make_mission(id="b", state=MissionState.PAUSED, cost=MissionCost(total_cost=0.75)),
			make_mission(id="c", state=MissionState.COMPLETE),
		]
		stats = compute_stats(missions)
		assert stats.total == 3
		assert stats.total_cost == 2.0
		assert stats.counts[MissionState.RUNNING] == 1
		assert stats.counts[MissionState.ERROR] == 0
		assert stats.active == 2

	def test_near_limit_uses_thresholds(self) -> None:
		usage = MissionProgress(context_usage=ContextUsage(usage_percent=70.0))
		missions = [make_mission(progress=usage)]
		assert compute_stats(missions).near_limit == 0
		custom = {"warning": 50.0, "danger": 65.0, "critical": 90.0}
		assert compute_stats(missions, custom).near_limit == 1

	def test_views_near_limit_matches_usage_with_same_thresholds(self, registry: MissionRegistry) -> None:
		custom = {"warning": 50.0, "danger": 65.0, "critical": 90.0}
		usage = ContextUsage(usage_percent=70.0)
		registry.upsert(make_mission(progress=MissionProgress(context_usage=usage)))
		views = MissionViews(registry, thresholds=custom)
		assert usage.near_limit_for(custom)
		assert views.state.stats.near_limit == 1

	def test_empty(self) -> None:
		stats = compute_stats([])
		assert stats.total == 0
		assert stats.total_cost == 0.0


class TestMissionViews:
	def test_state_filter_and_sort_are_independent(self, registry: MissionRegistry) -> None:
		_seed(registry)
		views = MissionViews(registry)
		views.set_filter(MissionFilter(states=frozenset({MissionState.RUNNING})))
		views.set_sort(MissionSort(key=SortKey.TITLE, descending=True))
		assert [m.id for m in views.state.missions] == ["c", "a"]
		views.set_sort(MissionSort(key=SortKey.CREATED_AT))
		assert [m.id for m in views.state.missions] == ["a", "c"]

	def test_stats_follow_cost_events(self, registry: MissionRegistry) -> None:
		_seed(registry)
		views = MissionViews(registry)
		assert views.state.stats.total_cost == 0.0
		registry.merge("a", {"cost": {"total_cost": 3.5}})
		assert views.state.stats.total_cost == 3.5
		assert views.state.version == registry.version

	def test_stats_cover_filtered_out_missions(self, registry: MissionRegistry) -> None:
		_seed(registry)
		views = MissionViews(registry)
		views.set_filter(MissionFilter(text="nothing matches"))
		assert views.state.missions == []
		assert views.state.stats.total == 3

	def test_recompute_only_on_change(self, registry: MissionRegistry) -> None:
		_seed(registry)
		views = MissionViews(registry)
		assert views.recompute_count == 0
		registry.merge("a", {"title": "Alpha"})  # no-op merge
		views.set_filter(MissionFilter())  # same as current
		assert views.recompute_count == 0
		registry.merge("a", {"title": "Alpha 2"})
		assert views.recompute_count == 1

	def test_selection(self, registry: MissionRegistry) -> None:
		_seed(registry)
		views = MissionViews(registry)
		registry.select("b")
		assert views.state.selected.id == "b"
		registry.remove("b")
		assert views.state.selected is None

	def test_callbacks(self, registry: MissionRegistry, caplog) -> None:
		views = MissionViews(registry)
		seen: list[MissionViewState] = []

		def boom(_: MissionViewState) -> None:
			raise RuntimeError("boom")

		views.subscribe(boom)
		views.subscribe(seen.append)
		registry.upsert(make_mission())
		assert len(seen) == 1
		assert seen[0].stats.total == 1
		assert "View callback error" in caplog.text

	def test_unsubscribe_stops_callbacks(self, registry: MissionRegistry) -> None:
		views = MissionViews(registry)
		seen: list[MissionViewState] = []
		unsubscribe = views.subscribe(seen.append)
		registry.upsert(make_mission())
		unsubscribe()
		registry.upsert(make_mission(id="m2"))
		assert len(seen) == 1
		unsubscribe()

	def test_close_stops_updates(self, registry: MissionRegistry) -> None:
		views = MissionViews(registry)
		views.close()
		registry.upsert(make_mission())
		assert views.state.stats.total == 0
