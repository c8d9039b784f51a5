from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Callable, Iterable, Optional

import pytest

from vigie.config import Settings
from vigie.errors import SourceUnavailable
from vigie.models import Listing, TrackedItem, UpdateCheck

BASE_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class DummyImage:
    def __init__(self, image_id: str = "sha256:old", repo_digests: Optional[list[str]] = None):
        self.id = image_id
        self.attrs = {"RepoDigests": list(repo_digests or [])}


class DummyContainer:
    def __init__(
        self,
        name: str,
        image: str = "repo:tag",
        image_id: str = "sha256:old",
        repo_digests: Optional[list[str]] = None,
        labels: Optional[dict] = None,
        network_mode: str = "bridge",
        container_id: Optional[str] = None,
    ):
        self.name = name
        self.id = container_id or f"{name}-id"
        self.labels = labels or {}
        self.attrs = {
            "Image": image_id,
            "Config": {"Image": image, "Labels": self.labels},
            "HostConfig": {"NetworkMode": network_mode},
        }
        self.image = DummyImage(image_id, repo_digests)


class DummyImages:
    def __init__(self, images: Optional[Iterable[DummyImage]] = None):
        self._images = list(images or [])
        self.registry: dict[str, object] = {}
        self.registry_calls: list[str] = []

    def list(self):
        return list(self._images)

    def get_registry_data(self, reference: str):
        self.registry_calls.append(reference)
        result = self.registry.get(reference)
        if isinstance(result, Exception):
            raise result
        if result is None:
            raise KeyError(reference)
        return SimpleNamespace(id=result)


class DummyClient:
    def __init__(
        self,
        containers_list: Optional[Iterable] = None,
        images: Optional[Iterable[DummyImage]] = None,
        list_error: Optional[Exception] = None,
    ):
        self.images = DummyImages(images)
        self._containers = list(containers_list or [])
        self.list_error = list_error
        self.containers = SimpleNamespace(list=self._list)

    def _list(self, all=True):
        if self.list_error is not None:
            raise self.list_error
        return list(self._containers)


class FakeClock:
    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeCheapSource:
    """Cheap source returning a fixed listing, optionally failing."""

    name = "fake-docker"

    def __init__(self, items: Optional[list[TrackedItem]] = None, unused: Optional[int] = 0):
        self.items = list(items or [])
        self.unused = unused
        self.fail = False
        self.calls: list[Optional[str]] = []
        self.instances: set[str] = {"local"}
        self.unreachable: set[str] = set()

    def list_current(self, scope: Optional[str] = None) -> list[TrackedItem]:
        return list(self.list_instances(scope).items)

    def list_instances(self, scope: Optional[str] = None) -> Listing:
        self.calls.append(scope)
        if self.fail:
            raise SourceUnavailable(self.name, "daemon down")
        known = self.instances | self.unreachable | {item.instance for item in self.items}
        selected = {scope} if scope is not None else known
        listed = selected - self.unreachable
        return Listing(
            items=tuple(item for item in self.items if item.instance in listed),
            listed=frozenset(listed),
            unreachable=frozenset(selected & self.unreachable),
        )

    def count_unused(self, scope: Optional[str] = None) -> Optional[int]:
        return self.unused


class FakeExpensiveSource:
    """Registry double keyed by item name; values are UpdateCheck or an exception."""

    def __init__(self, results: Optional[dict] = None):
        self.results = dict(results or {})
        self.calls: list[str] = []

    def check_update(self, item: TrackedItem) -> UpdateCheck:
        self.calls.append(item.name)
        result = self.results.get(item.name, UpdateCheck(latest_digest=item.current_digest, latest_tag=item.current_tag))
        if isinstance(result, Exception):
            raise result
        return result


def make_item(name: str, **overrides) -> TrackedItem:
    data = {
        "id": f"{name}-id",
        "name": name,
        "image": f"{name}:latest",
        "instance": "local",
        "owner_group_key": None,
        "current_digest": f"sha256:{name}-current",
        "repo_digests": (f"sha256:{name}-current",),
        "provides_network": False,
        "uses_network_mode": False,
    }
    data.update(overrides)
    return TrackedItem(**data)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        docker_host="unix://test",
        instances={"local": "unix://test"},
        state_db=None,
        registry_spacing_ms=0,
        rate_limit_threshold=5,
        rate_limit_window_seconds=60,
        registry_fan_out=2,
        pull_enabled=True,
        pull_interval_minutes=60,
        pull_cron=None,
        discord_webhook=None,
        webhook_url=None,
        log_level="INFO",
        timezone="UTC",
    )


@pytest.fixture
def notifier_settings(settings: Settings) -> Settings:
    data = settings.__dict__ | {"discord_webhook": "https://discord.test/api/webhooks/1/abc", "webhook_url": "https://hook"}
    return Settings(**data)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def item_factory() -> Callable[..., TrackedItem]:
    return make_item


@pytest.fixture
def dummy_container() -> Callable[..., DummyContainer]:
    def _make(name: str, **kwargs):
        return DummyContainer(name, **kwargs)
    return _make


@pytest.fixture
def dummy_client() -> Callable[..., DummyClient]:
    def _make(containers_list: Optional[Iterable] = None, **kwargs):
        return DummyClient(containers_list=containers_list, **kwargs)
    return _make
