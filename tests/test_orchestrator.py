from sqlite3 import OperationalError
from typing import Optional

import pytest

from vigie.cache import CacheStore, MemoryBackend
from vigie.errors import RateLimitExceeded, SourceUnavailable
from vigie.gate import RateGate
from vigie.ledger import MemoryLedger
from vigie.models import CacheMetadata, CachePayload, RunStatus, ScheduleConfig, UpdateCheck
from vigie.orchestrator import UpdateOrchestrator
from vigie.schedule import ScheduleCalculator
from tests.conftest import BASE_TIME, FakeCheapSource, FakeExpensiveSource, make_item

KEY = "containers"


class Harness:
    def __init__(self, clock, items=None, results=None, threshold: int = 5, fan_out: int = 1, backend=None):
        self.cache = CacheStore(backend or MemoryBackend())
        self.cheap = FakeCheapSource(items)
        self.expensive = FakeExpensiveSource(results)
        self.gate = RateGate(default_spacing_ms=0, threshold=threshold)
        self.ledger = MemoryLedger(clock=clock)
        self.announced: list = []
        self.orchestrator = UpdateOrchestrator(
            self.cache,
            self.cheap,
            self.expensive,
            self.gate,
            self.ledger,
            scheduler=ScheduleCalculator({"docker-hub-pull": ScheduleConfig(True, 60)}, self.ledger, clock),
            fan_out=fan_out,
            on_new_updates=self.announced.append,
            clock=clock,
        )

    def seed(self, *items, unused: Optional[int] = None, metadata: Optional[CacheMetadata] = None):
        self.cache.replace(KEY, CachePayload(items=tuple(items), unused_count=unused), metadata or CacheMetadata())

    def cached(self):
        return {item.name: item for item in self.cache.get(KEY).payload.items}


def update_for(name: str) -> UpdateCheck:
    return UpdateCheck(latest_digest=f"sha256:{name}-newer", latest_tag="latest")


def flagged(name: str, **overrides):
    return make_item(name, latest_digest=f"sha256:{name}-newer", latest_tag="latest", checked_at=BASE_TIME, **overrides)


def test_empty_cache_read_is_cheap_only(clock):
    harness = Harness(clock, items=[make_item("a"), make_item("b")])

    snapshot = harness.orchestrator.get_current()

    assert [item.name for item in snapshot.items] == ["a", "b"]
    assert harness.expensive.calls == []
    assert harness.ledger.recent_runs() == []
    assert harness.cache.get(KEY).metadata.last_cheap_refresh == BASE_TIME
    assert harness.cache.get(KEY).metadata.last_expensive_refresh is None


def test_cached_read_touches_no_source(clock):
    harness = Harness(clock, items=[make_item("a")])
    harness.seed(flagged("a"), unused=2)

    snapshot = harness.orchestrator.get_current()

    assert snapshot.items[0].has_update_available is True
    assert snapshot.unused_count == 2
    assert harness.cheap.calls == []
    assert harness.expensive.calls == []


def test_scoped_full_refresh_keeps_other_instances(clock):
    a = flagged("a", instance="local")
    b = make_item("b", instance="remote")
    harness = Harness(clock, items=[a, b])
    harness.seed(a, b)

    snapshot = harness.orchestrator.get_current(force_full_refresh=True, scope="remote")

    assert [item.name for item in snapshot.items] == ["b"]
    assert snapshot.items[0].has_update_available is False
    assert harness.expensive.calls == ["b"]
    cached = harness.cached()
    assert cached["a"].has_update_available is True
    assert cached["b"].has_update_available is False


def test_breaker_open_fails_fast_without_side_effects(clock):
    harness = Harness(clock, items=[make_item("a")], threshold=1)
    harness.seed(flagged("a"))
    before = harness.cache.get(KEY)
    harness.gate.record_failure(True)

    with pytest.raises(RateLimitExceeded):
        harness.orchestrator.get_current(force_full_refresh=True)

    assert harness.cheap.calls == []
    assert harness.expensive.calls == []
    assert harness.ledger.recent_runs() == []
    assert harness.cache.get(KEY) == before


def test_full_refresh_replaces_cache_and_records_run(clock):
    harness = Harness(clock, items=[make_item("a"), make_item("b")], results={"a": update_for("a")})
    harness.seed(make_item("gone"), unused=9)
    harness.cheap.unused = 3

    snapshot = harness.orchestrator.get_current(force_full_refresh=True)

    assert sorted(item.name for item in snapshot.items) == ["a", "b"]
    assert snapshot.unused_count == 3
    cached = harness.cached()
    assert cached["a"].has_update_available is True
    assert cached["b"].has_update_available is False
    assert "gone" not in cached
    (run,) = harness.ledger.recent_runs()
    assert run.status == RunStatus.COMPLETED
    assert (run.items_checked, run.items_updated) == (2, 1)
    metadata = harness.cache.get(KEY).metadata
    assert metadata.last_expensive_refresh == BASE_TIME
    assert metadata.last_cheap_refresh == BASE_TIME


def test_item_failure_keeps_previous_result(clock, caplog):
    harness = Harness(
        clock,
        items=[make_item("a"), make_item("b")],
        results={"a": UpdateCheck(error="registry 500"), "b": RuntimeError("boom")},
    )
    harness.seed(flagged("a"), flagged("b"))
    caplog.set_level("WARNING")

    harness.orchestrator.get_current(force_full_refresh=True)

    cached = harness.cached()
    assert cached["a"].has_update_available is True
    assert cached["b"].has_update_available is True
    (run,) = harness.ledger.recent_runs()
    assert run.status == RunStatus.COMPLETED
    assert run.items_checked == 0
    assert "check failed for a" in caplog.text
    assert harness.gate.failure_count() == 0


def test_not_found_clears_update_status(clock):
    harness = Harness(clock, items=[make_item("a")], results={"a": UpdateCheck(not_found=True)})
    harness.seed(flagged("a"))

    harness.orchestrator.get_current(force_full_refresh=True)

    item = harness.cached()["a"]
    assert item.registry_missing is True
    assert item.has_update_available is False


def test_rate_limit_mid_batch_merges_and_fails_run(clock):
    items = [make_item("a"), make_item("b"), make_item("c")]
    harness = Harness(
        clock,
        items=items,
        results={"a": update_for("a"), "b": RateLimitExceeded()},
        threshold=1,
    )
    harness.seed(make_item("a"), make_item("b"), flagged("c"), make_item("old"))

    with pytest.raises(RateLimitExceeded):
        harness.orchestrator.get_current(force_full_refresh=True)

    cached = harness.cached()
    assert cached["a"].has_update_available is True
    assert cached["c"].has_update_available is True
    assert "old" in cached
    assert harness.expensive.calls == ["a", "b"]
    (run,) = harness.ledger.recent_runs()
    assert run.status == RunStatus.FAILED
    assert run.error_message == "rate limit exceeded"
    assert harness.gate.is_open() is True


def test_cheap_failure_serves_stale_cache(clock):
    harness = Harness(clock, items=[make_item("a")])
    harness.seed(flagged("a"))
    harness.cheap.fail = True

    snapshot = harness.orchestrator.get_current(force_full_refresh=True)

    assert snapshot.stale is True
    assert snapshot.items[0].has_update_available is True
    (run,) = harness.ledger.recent_runs()
    assert run.status == RunStatus.FAILED
    assert "daemon down" in run.error_message


def test_cheap_failure_without_cache_raises(clock):
    harness = Harness(clock)
    harness.cheap.fail = True
    with pytest.raises(SourceUnavailable):
        harness.orchestrator.get_current()


def test_refresh_prunes_listed_scope_only(clock):
    harness = Harness(clock, items=[make_item("a")])
    harness.seed(flagged("a"), flagged("gone"), flagged("r", instance="remote"))

    snapshot = harness.orchestrator.refresh("local")

    assert [item.name for item in snapshot.items] == ["a"]
    assert snapshot.items[0].has_update_available is True
    assert sorted(harness.cached()) == ["a", "r"]


def test_drifted_cache_is_backfilled(clock, caplog):
    legacy = make_item("a", provides_network=None, uses_network_mode=None, latest_digest="sha256:a-newer",
                       checked_at=BASE_TIME)
    harness = Harness(clock, items=[make_item("a", provides_network=True)])
    harness.seed(legacy, metadata=CacheMetadata(schema_version=1))
    caplog.set_level("INFO")

    snapshot = harness.orchestrator.get_current()

    assert snapshot.items[0].provides_network is True
    assert snapshot.items[0].has_update_available is True
    assert harness.cache.get(KEY).drifted is False
    assert harness.expensive.calls == []
    assert "Backfilling" in caplog.text


def test_drifted_cache_served_when_backfill_fails(clock):
    harness = Harness(clock)
    harness.seed(make_item("a", provides_network=None))
    harness.cheap.fail = True
    snapshot = harness.orchestrator.get_current()
    assert snapshot.stale is True
    assert [item.name for item in snapshot.items] == ["a"]


def test_new_updates_are_announced_once(clock):
    harness = Harness(clock, items=[make_item("a"), make_item("b")], results={"a": update_for("a")})
    harness.orchestrator.get_current(force_full_refresh=True)
    harness.orchestrator.get_current(force_full_refresh=True)
    assert len(harness.announced) == 1
    assert [item.name for item in harness.announced[0]] == ["a"]


def test_announce_errors_do_not_fail_refresh(clock, caplog):
    harness = Harness(clock, items=[make_item("a")], results={"a": update_for("a")})

    def explode(items):
        raise RuntimeError("webhook down")

    harness.orchestrator.on_new_updates = explode
    caplog.set_level("ERROR")
    harness.orchestrator.get_current(force_full_refresh=True)
    assert "Failed to announce" in caplog.text


def test_unreachable_instance_keeps_cached_items(clock):
    harness = Harness(clock, items=[make_item("a")])
    harness.seed(flagged("r", instance="remote"))
    harness.cheap.unreachable = {"remote"}

    harness.orchestrator.get_current(force_full_refresh=True)

    assert harness.cached()["r"].has_update_available is True


def test_fan_out_checks_every_item(clock):
    items = [make_item(f"c{index}") for index in range(8)]
    harness = Harness(clock, items=items, fan_out=4)
    harness.orchestrator.get_current(force_full_refresh=True)
    assert sorted(harness.expensive.calls) == sorted(item.name for item in items)


def test_compute_next_scheduled_run(clock):
    harness = Harness(clock, items=[make_item("a")])
    assert harness.orchestrator.compute_next_scheduled_run() == BASE_TIME.replace(hour=13)
    harness.orchestrator.scheduler = None
    assert harness.orchestrator.compute_next_scheduled_run() is None


def test_scoped_refresh_during_pull_keeps_unreachable_items(clock):
    harness = Harness(clock, items=[make_item("a")], results={"a": update_for("a")})
    harness.seed(flagged("y", instance="remote"))
    harness.cheap.unreachable = {"remote"}
    check_update = harness.expensive.check_update

    def check_and_refresh(item):
        harness.orchestrator.refresh("local")
        return check_update(item)

    harness.expensive.check_update = check_and_refresh

    harness.orchestrator.get_current(force_full_refresh=True)

    cached = harness.cached()
    assert cached["y"].has_update_available is True
    assert cached["a"].has_update_available is True


class LockedBackend(MemoryBackend):
    def write(self, key, data):
        raise OperationalError("database is locked")


def test_cache_write_failure_fails_run(clock, caplog):
    harness = Harness(clock, items=[make_item("a")], backend=LockedBackend())
    caplog.set_level("ERROR")

    with pytest.raises(OperationalError):
        harness.orchestrator.get_current(force_full_refresh=True)

    (run,) = harness.ledger.recent_runs()
    assert run.status == RunStatus.FAILED
    assert run.error_message == "database is locked"
    assert "Registry pull" in caplog.text


def test_refresh_prunes_instance_without_containers(clock):
    harness = Harness(clock, items=[make_item("a")])
    harness.cheap.instances = {"local", "empty"}
    harness.seed(make_item("a"), flagged("gone", instance="empty"))

    snapshot = harness.orchestrator.refresh()

    assert [item.name for item in snapshot.items] == ["a"]
    assert sorted(harness.cached()) == ["a"]
