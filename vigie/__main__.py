from logging import getLogger
from math import ceil
from threading import Event, Lock, Thread
from time import sleep
from typing import Optional

from docker import DockerClient
from docker.errors import DockerException
from requests.exceptions import RequestException

from .cache import CacheStore, MemoryBackend, SqliteBackend
from .config import PULL_JOB, Settings, load_settings
from .errors import RateLimitExceeded, SourceUnavailable
from .gate import RateGate
from .ledger import MemoryLedger, SqliteLedger
from .models import ScheduleConfig
from .notifier import notify_updates
from .orchestrator import UpdateOrchestrator
from .schedule import ScheduleCalculator
from .sources import DockerSource, RegistrySource
from .utils import configure_logging, format_human, now_tz, now_utc

LOG = getLogger(__name__)

IDLE_WAIT_SECONDS = 300
EVENT_RETRY_SECONDS = 5
MONITORED_ACTIONS = {
    "create",
    "destroy",
    "die",
    "rename",
    "start",
    "stop",
    "update",
}


class WakeSignal:
    """An Event that remembers which instances asked for a refresh."""

    def __init__(self):
        self._event = Event()
        self._lock = Lock()
        self._scopes: set[str] = set()

    def request(self, scope: str) -> None:
        with self._lock:
            self._scopes.add(scope)
        self._event.set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout=timeout)

    def drain(self) -> set[str]:
        with self._lock:
            scopes = self._scopes
            self._scopes = set()
            self._event.clear()
        return scopes


def build_client_with_retry(instance: str, base_url: str, settings: Settings) -> DockerClient:
    attempts = settings.docker_connect_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            client = DockerClient(base_url=base_url)
            client.ping()
            return client
        except (DockerException, RequestException) as error:
            if attempt == attempts:
                raise SystemExit(f"Unable to connect to Docker instance {instance}: {error}") from error
            LOG.warning(
                "Docker instance %s not reachable (attempt %s/%s): %s",
                instance,
                attempt,
                attempts,
                error,
            )
            sleep(settings.docker_connect_backoff_seconds)
    raise SystemExit(f"Unable to connect to Docker instance {instance}")


def build_clients(settings: Settings) -> dict[str, DockerClient]:
    return {
        instance: build_client_with_retry(instance, url, settings)
        for instance, url in settings.instances.items()
    }


def is_monitored_event(event: dict) -> bool:
    if event.get("Type") != "container":
        return False
    return event.get("Action") in MONITORED_ACTIONS


def start_event_listener(instance: str, client: DockerClient, wake_signal: WakeSignal) -> Thread:
    def _run() -> None:
        while True:
            try:
                for event in client.events(decode=True):
                    if not isinstance(event, dict) or not is_monitored_event(event):
                        continue
                    name = event.get("Actor", {}).get("Attributes", {}).get("name", event.get("id"))
                    LOG.debug("Docker event %s on %s/%s", event.get("Action"), instance, name)
                    wake_signal.request(instance)
            except (DockerException, RequestException) as error:
                LOG.warning("Event stream error on %s: %s", instance, error)
                sleep(EVENT_RETRY_SECONDS)

    thread = Thread(target=_run, name=f"events-{instance}", daemon=True)
    thread.start()
    return thread


def build_orchestrator(settings: Settings, clients: dict[str, DockerClient]) -> UpdateOrchestrator:
    if settings.state_db:
        cache = CacheStore(SqliteBackend(settings.state_db))
        ledger = SqliteLedger(settings.state_db)
    else:
        cache = CacheStore(MemoryBackend())
        ledger = MemoryLedger()
    scheduler = ScheduleCalculator(
        {
            PULL_JOB: ScheduleConfig(
                enabled=settings.pull_enabled,
                interval_minutes=settings.pull_interval_minutes,
                cron=settings.pull_cron,
            )
        },
        ledger=ledger,
    )
    gate = RateGate(
        default_spacing_ms=settings.registry_spacing_ms,
        threshold=settings.rate_limit_threshold,
        window_seconds=settings.rate_limit_window_seconds,
    )
    return UpdateOrchestrator(
        cache,
        DockerSource(clients),
        RegistrySource(clients),
        gate,
        ledger,
        scheduler=scheduler,
        fan_out=settings.registry_fan_out,
        on_new_updates=lambda items: notify_updates(settings, items),
    )


def run_pull(orchestrator: UpdateOrchestrator) -> bool:
    try:
        snapshot = orchestrator.get_current(force_full_refresh=True)
    except RateLimitExceeded as error:
        LOG.warning("Registry pull stopped: %s", error.message)
        return False
    except SourceUnavailable as error:
        LOG.error("Registry pull skipped: %s", error.message)
        return False
    pending = sum(1 for item in snapshot.items if item.has_update_available)
    LOG.info("Registry pull done; %s of %s containers have updates", pending, len(snapshot.items))
    return True


def run_refresh(orchestrator: UpdateOrchestrator, scopes: set[str]) -> None:
    for scope in sorted(scopes):
        try:
            orchestrator.refresh(scope)
        except SourceUnavailable as error:
            LOG.warning("Refresh of %s failed: %s", scope, error.message)


def seconds_until(next_run, reference) -> Optional[int]:
    if next_run is None:
        return None
    return max(1, int(ceil((next_run - reference).total_seconds())))


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    clients = build_clients(settings)
    LOG.info("Starting Vigie for %s", ", ".join(sorted(clients)))
    orchestrator = build_orchestrator(settings, clients)
    wake_signal = WakeSignal()
    for instance, client in clients.items():
        start_event_listener(instance, client, wake_signal)

    try:
        orchestrator.get_current()
    except SourceUnavailable as error:
        LOG.error("Initial listing failed: %s", error.message)

    while True:
        next_run = orchestrator.compute_next_scheduled_run()
        if next_run is not None and next_run <= now_utc():
            if not run_pull(orchestrator):
                retry_after = settings.rate_limit_window_seconds
                if wake_signal.wait(timeout=retry_after):
                    run_refresh(orchestrator, wake_signal.drain())
                continue
            next_run = orchestrator.compute_next_scheduled_run()

        wait_seconds = seconds_until(next_run, now_utc())
        if wait_seconds is None:
            LOG.info("Registry pulls not scheduled; listening for Docker events")
            wait_seconds = IDLE_WAIT_SECONDS
        else:
            local_now = now_tz(settings.timezone)
            LOG.info("Next registry pull %s (in %ss)", format_human(next_run, local_now), wait_seconds)

        if wake_signal.wait(timeout=wait_seconds):
            run_refresh(orchestrator, wake_signal.drain())


if __name__ == "__main__":
    main()
