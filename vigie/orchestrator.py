"""Decides how much work a read needs and folds the results into the cache.

Ordinary reads are served from the cache and fall back to the cheap Docker
listing; only an explicit pull (user or scheduler) reaches the registry.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from logging import getLogger
from typing import Callable, Optional

from .cache import CacheStore
from .config import CONTAINERS_KEY, DEFAULT_REGISTRY_FAN_OUT, PULL_JOB
from .errors import PartialItemFailure, RateLimitExceeded, SchemaDrift, SourceUnavailable
from .gate import RateGate
from .models import (
    SCHEMA_VERSION,
    CacheEntry,
    CacheMetadata,
    CachePayload,
    Listing,
    RunOutcome,
    RunStatus,
    Snapshot,
    TrackedItem,
)
from .utils import now_utc, short_id

LOG = getLogger(__name__)


class UpdateOrchestrator:
    def __init__(
        self,
        cache: CacheStore,
        cheap_source,
        expensive_source,
        gate: RateGate,
        ledger,
        scheduler=None,
        key: str = CONTAINERS_KEY,
        job_type: str = PULL_JOB,
        fan_out: int = DEFAULT_REGISTRY_FAN_OUT,
        spacing_ms: Optional[int] = None,
        on_new_updates: Optional[Callable[[list[TrackedItem]], None]] = None,
        clock: Callable = now_utc,
    ):
        self.cache = cache
        self.cheap_source = cheap_source
        self.expensive_source = expensive_source
        self.gate = gate
        self.ledger = ledger
        self.scheduler = scheduler
        self.key = key
        self.job_type = job_type
        self.fan_out = max(1, fan_out)
        self.spacing_ms = spacing_ms
        self.on_new_updates = on_new_updates
        self._clock = clock

    def get_current(self, force_full_refresh: bool = False, scope: Optional[str] = None) -> Snapshot:
        if force_full_refresh:
            return self._full_refresh(scope)
        entry = self.cache.get(self.key)
        if entry is None:
            LOG.debug("No cached %s; listing containers", self.key)
            return self.refresh(scope)
        try:
            entry.ensure_current_schema()
        except SchemaDrift as drift:
            LOG.info("Backfilling %s", drift.message)
            return self._backfill(entry, scope)
        return Snapshot.from_entry(entry, scope)

    def compute_next_scheduled_run(self, job_type: Optional[str] = None):
        if self.scheduler is None:
            return None
        return self.scheduler.compute_next_scheduled_run(job_type or self.job_type)

    def refresh(self, scope: Optional[str] = None) -> Snapshot:
        """Cheap-only refresh: re-list containers and merge into the cache."""
        try:
            listing = self.cheap_source.list_instances(scope)
        except SourceUnavailable as error:
            return self._fallback(error, scope)
        entry = self._merge_listing(listing, self._count_unused(scope))
        LOG.info("Refreshed %s containers from %s", len(listing.items), scope or "all instances")
        return Snapshot.from_entry(entry, scope)

    def _backfill(self, entry: CacheEntry, scope: Optional[str]) -> Snapshot:
        try:
            listing = self.cheap_source.list_instances(scope)
        except SourceUnavailable as error:
            LOG.warning("Serving cache needing backfill; %s", error)
            return Snapshot.from_entry(entry, scope, stale=True)
        merged = self._merge_listing(listing, self._count_unused(scope))
        return Snapshot.from_entry(merged, scope)

    def _merge_listing(self, listing: Listing, unused: Optional[int]) -> CacheEntry:
        # Only instances that answered are authoritative about missing containers
        return self.cache.merge(
            self.key,
            CachePayload(items=listing.items, unused_count=unused),
            {"last_cheap_refresh": self._clock(), "schema_version": SCHEMA_VERSION},
            prune_instances=listing.listed,
        )

    def _count_unused(self, scope: Optional[str]) -> Optional[int]:
        counter = getattr(self.cheap_source, "count_unused", None)
        if counter is None:
            return None
        try:
            return counter(scope)
        except SourceUnavailable as error:
            LOG.warning("Keeping previous unused image count: %s", error)
            return None

    def _fallback(self, error: SourceUnavailable, scope: Optional[str]) -> Snapshot:
        cached = self.cache.get(self.key)
        if cached is None:
            raise error
        LOG.warning("Serving cached %s; %s", self.key, error)
        return Snapshot.from_entry(cached, scope, stale=True)

    def _full_refresh(self, scope: Optional[str]) -> Snapshot:
        if self.gate.is_open():
            LOG.warning("Registry breaker open; refusing pull for %s", scope or "all instances")
            raise RateLimitExceeded(details={"scope": scope})

        run_id = self.ledger.create_run(self.job_type)
        try:
            listing = self.cheap_source.list_instances(scope)
        except SourceUnavailable as error:
            self.ledger.complete_run(run_id, RunOutcome(RunStatus.FAILED, error_message=str(error)))
            return self._fallback(error, scope)
        except Exception as error:
            self.ledger.complete_run(run_id, RunOutcome(RunStatus.FAILED, error_message=str(error)))
            raise

        try:
            previous, entry, checked_count, failures, limited, updated = self._check_and_store(listing, scope)
        except Exception as error:
            LOG.error("Registry pull %s failed: %s", run_id, error)
            self.ledger.complete_run(run_id, RunOutcome(RunStatus.FAILED, error_message=str(error)))
            raise

        if limited:
            self.ledger.complete_run(
                run_id,
                RunOutcome(
                    RunStatus.FAILED,
                    items_checked=checked_count,
                    items_updated=len(updated),
                    error_message="rate limit exceeded",
                ),
            )
            raise RateLimitExceeded(details={"scope": scope, "unchecked": limited})

        self.ledger.complete_run(
            run_id,
            RunOutcome(RunStatus.COMPLETED, items_checked=checked_count, items_updated=len(updated)),
        )
        LOG.info(
            "Checked %s containers (%s failed); %s with updates",
            checked_count,
            failures,
            len(updated),
        )
        self._announce(updated, previous)
        return Snapshot.from_entry(entry, scope)

    def _check_and_store(self, listing: Listing, scope: Optional[str]):
        previous = self.cache.get(self.key)
        started = self._clock()
        checked, failures, limited = self._check_all(list(listing.items), previous)
        unused = self._count_unused(scope)
        updated = [item for item in checked if item.has_update_available]
        checked_count = len(checked) - failures - limited

        if limited or scope is not None:
            # Interrupted batches merge so unchecked items keep their results
            entry = self.cache.merge(
                self.key,
                CachePayload(items=tuple(checked), unused_count=unused),
                {
                    "last_cheap_refresh": started,
                    "last_expensive_refresh": started,
                    "schema_version": SCHEMA_VERSION,
                },
                prune_instances=listing.listed if scope is not None else (),
            )
        else:
            entry = self.cache.replace(
                self.key,
                CachePayload(
                    items=tuple(checked) + _unreachable_items(previous, listing.unreachable),
                    unused_count=unused,
                ),
                CacheMetadata(last_cheap_refresh=started, last_expensive_refresh=started),
            )
        return previous, entry, checked_count, failures, limited, updated

    def _check_all(
        self, items: list[TrackedItem], previous: Optional[CacheEntry]
    ) -> tuple[list[TrackedItem], int, int]:
        """Check every item through the gate; returns (items, failures, rate-limited)."""
        if not items:
            return [], 0, 0
        results: list[TrackedItem] = []
        failures = 0
        limited = 0
        with ThreadPoolExecutor(max_workers=min(self.fan_out, len(items))) as executor:
            futures = [executor.submit(self._check_one, item) for item in items]
            for item, future in zip(items, futures):
                try:
                    results.append(future.result())
                except RateLimitExceeded:
                    limited += 1
                    results.append(_carry_over(item, previous))
                except PartialItemFailure as failure:
                    failures += 1
                    LOG.warning("%s", failure.message)
                    results.append(_carry_over(item, previous))
        return results, failures, limited

    def _check_one(self, item: TrackedItem) -> TrackedItem:
        if self.gate.is_open():
            raise RateLimitExceeded()
        self.gate.acquire(self.spacing_ms)
        try:
            result = self.expensive_source.check_update(item)
        except RateLimitExceeded:
            self.gate.record_failure(True)
            raise
        except Exception as error:
            # Per-item errors never abort the batch
            self.gate.record_failure(False)
            raise PartialItemFailure(item.name, str(error)) from error
        self.gate.record_success()
        checked_at = self._clock()
        if result.not_found:
            LOG.debug("Clearing update status for %s; image not in registry", item.name)
            return item.cleared(checked_at)
        if result.error:
            raise PartialItemFailure(item.name, result.error)
        LOG.debug("%s latest %s", item.name, short_id(result.latest_digest))
        return replace(
            item,
            latest_digest=result.latest_digest,
            latest_tag=result.latest_tag,
            checked_at=checked_at,
            registry_missing=False,
        )

    def _announce(self, updated: list[TrackedItem], previous: Optional[CacheEntry]) -> None:
        if self.on_new_updates is None or not updated:
            return
        fresh = []
        for item in updated:
            prior = previous.find(item) if previous is not None else None
            if prior is None or not prior.has_update_available:
                fresh.append(item)
        if not fresh:
            return
        try:
            self.on_new_updates(fresh)
        except Exception as error:
            LOG.error("Failed to announce %s new updates: %s", len(fresh), error)


def _carry_over(item: TrackedItem, previous: Optional[CacheEntry]) -> TrackedItem:
    prior = previous.find(item) if previous is not None else None
    if prior is None:
        return item
    return item.with_update_fields_from(prior)


def _unreachable_items(previous: Optional[CacheEntry], unreachable: frozenset) -> tuple[TrackedItem, ...]:
    if previous is None or not unreachable:
        return ()
    kept = tuple(item for item in previous.payload.items if item.instance in unreachable)
    if kept:
        LOG.warning("Keeping %s cached containers from unreachable %s", len(kept), ", ".join(sorted(unreachable)))
    return kept
