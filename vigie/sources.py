from logging import getLogger
from typing import Optional

from docker import DockerClient
from docker.errors import APIError, DockerException, NotFound
from docker.models.containers import Container
from requests.exceptions import RequestException

from .errors import RateLimitExceeded, SourceUnavailable
from .models import Listing, TrackedItem, UpdateCheck
from .utils import normalize_digest, split_image_ref

LOG = getLogger(__name__)

STACK_LABELS = ("com.docker.compose.project", "com.docker.stack.namespace")
RATE_LIMIT_MARKERS = ("toomanyrequests", "too many requests", "rate limit")


def _container_network_target(container: Container) -> Optional[str]:
    mode = (container.attrs.get("HostConfig") or {}).get("NetworkMode") or ""
    if mode.startswith("container:"):
        return mode.split(":", 1)[1] or None
    return None


def _stack_name(container: Container) -> Optional[str]:
    labels = container.labels or {}
    for label in STACK_LABELS:
        value = labels.get(label)
        if value:
            return value
    return None


def _repo_digests(container: Container) -> tuple[str, ...]:
    try:
        raw = container.image.attrs.get("RepoDigests") or []
    except (DockerException, RequestException) as error:
        LOG.debug("Could not read repo digests for %s: %s", container.name, error)
        return ()
    digests = []
    for entry in raw:
        digest = entry.split("@", 1)[1] if "@" in entry else entry
        if digest not in digests:
            digests.append(digest)
    return tuple(digests)


class DockerSource:
    """Cheap source: what containers exist right now on each instance.

    No registry traffic happens here. Topology flags come from
    ``HostConfig.NetworkMode``: ``container:<name|id>`` marks the container as
    using another container's network stack, and marks that target as
    providing it.
    """

    name = "docker"

    def __init__(self, clients: dict[str, DockerClient]):
        self.clients = clients

    def _selected(self, scope: Optional[str]) -> dict[str, DockerClient]:
        if scope is None:
            return self.clients
        if scope not in self.clients:
            raise SourceUnavailable(self.name, f"unknown instance {scope}")
        return {scope: self.clients[scope]}

    def list_current(self, scope: Optional[str] = None) -> list[TrackedItem]:
        return list(self.list_instances(scope).items)

    def list_instances(self, scope: Optional[str] = None) -> Listing:
        selected = self._selected(scope)
        items: list[TrackedItem] = []
        failures: list[str] = []
        listed: set[str] = set()
        for instance, client in selected.items():
            try:
                containers = client.containers.list(all=True)
            except (DockerException, RequestException) as error:
                LOG.error("Failed to list containers on %s: %s", instance, error)
                failures.append(f"{instance}: {error}")
                continue
            listed.add(instance)
            items.extend(self._describe(instance, containers))
        if not listed and failures:
            raise SourceUnavailable(self.name, "; ".join(failures))
        return Listing(
            items=tuple(items),
            listed=frozenset(listed),
            unreachable=frozenset(selected) - listed,
        )

    def _describe(self, instance: str, containers: list[Container]) -> list[TrackedItem]:
        targets: set[str] = set()
        for container in containers:
            target = _container_network_target(container)
            if target is not None:
                targets.add(target)

        items: list[TrackedItem] = []
        for container in containers:
            image_ref = (container.attrs.get("Config") or {}).get("Image")
            if not image_ref:
                LOG.warning("Skipping %s on %s; missing image reference", container.name, instance)
                continue
            repo_digests = _repo_digests(container)
            provides = container.name in targets or container.id in targets or any(
                container.id.startswith(target) for target in targets if len(target) >= 12
            )
            items.append(
                TrackedItem(
                    id=container.id,
                    name=container.name,
                    image=image_ref,
                    instance=instance,
                    owner_group_key=_stack_name(container),
                    current_digest=repo_digests[0] if repo_digests else None,
                    repo_digests=repo_digests,
                    provides_network=provides,
                    uses_network_mode=_container_network_target(container) is not None,
                )
            )
        return items

    def count_unused(self, scope: Optional[str] = None) -> int:
        total = 0
        for instance, client in self._selected(scope).items():
            try:
                used = set()
                for container in client.containers.list(all=True):
                    image_id = (container.attrs or {}).get("Image")
                    if image_id:
                        used.add(image_id)
                images = client.images.list()
            except (DockerException, RequestException) as error:
                LOG.warning("Could not count unused images on %s: %s", instance, error)
                continue
            total += sum(1 for image in images if image.id not in used)
        return total


def _is_rate_limited(error: APIError) -> bool:
    if getattr(error, "status_code", None) == 429:
        return True
    text = f"{error.explanation or ''} {error}".lower()
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


class RegistrySource:
    """Expensive source: the registry's current digest for an item's tag.

    Uses the distribution endpoint of the Docker engine that runs the item, so
    registry credentials configured on that engine apply.
    """

    name = "registry"

    def __init__(self, clients: dict[str, DockerClient]):
        self.clients = clients

    def check_update(self, item: TrackedItem) -> UpdateCheck:
        client = self.clients.get(item.instance)
        if client is None:
            return UpdateCheck(error=f"unknown instance {item.instance}")
        repository, tag = split_image_ref(item.image)
        if not repository:
            return UpdateCheck(error="missing image reference", not_found=True)
        try:
            registry_data = client.images.get_registry_data(f"{repository}:{tag}")
        except NotFound as error:
            LOG.info("%s not found in registry: %s", item.image, error)
            return UpdateCheck(latest_tag=tag, error=str(error), not_found=True)
        except APIError as error:
            if _is_rate_limited(error):
                raise RateLimitExceeded(details={"image": item.image}) from error
            LOG.warning("Registry lookup failed for %s: %s", item.image, error)
            return UpdateCheck(error=str(error))
        except (DockerException, RequestException) as error:
            LOG.warning("Registry lookup failed for %s: %s", item.image, error)
            return UpdateCheck(error=str(error))
        digest = registry_data.id
        if not normalize_digest(digest):
            return UpdateCheck(latest_tag=tag, error="registry returned no digest")
        return UpdateCheck(latest_digest=digest, latest_tag=tag)
