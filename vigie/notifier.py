from http.client import HTTPConnection, HTTPSConnection
from json import dumps
from logging import getLogger
from typing import Any, Iterable
from urllib.parse import urlsplit

from .config import Settings
from .models import TrackedItem
from .utils import short_id

LOG = getLogger(__name__)

DISCORD_CONTENT_LIMIT = 2000
TITLE = "Container updates available"


def describe_update(item: TrackedItem) -> str:
    current = short_id(item.current_digest) if item.current_digest else item.current_tag
    latest = short_id(item.latest_digest) if item.latest_digest else item.latest_tag
    return f"{item.instance}/{item.name} ({item.image}): {current} -> {latest}"


def format_message(items: Iterable[TrackedItem]) -> str:
    return "\n".join(describe_update(item) for item in items)


def notify_updates(settings: Settings, items: list[TrackedItem]) -> None:
    if not items:
        return
    message = format_message(items)
    LOG.info("Announcing %s new updates", len(items))
    notify_discord(settings, TITLE, message)
    notify_webhook(settings, TITLE, message, items)


def notify_discord(settings: Settings, title: str, message: str) -> None:
    if settings.discord_webhook is None:
        LOG.debug("Discord disabled; missing webhook")
        return
    content = f"**{title}**\n{message}"
    if len(content) > DISCORD_CONTENT_LIMIT:
        content = content[: DISCORD_CONTENT_LIMIT - 3] + "..."
    _post_json(settings.discord_webhook, {"content": content}, "Discord")


def notify_webhook(settings: Settings, title: str, message: str, items: list[TrackedItem]) -> None:
    if settings.webhook_url is None:
        LOG.debug("Webhook disabled; missing URL")
        return
    payload = {
        "title": title,
        "message": message,
        "containers": [item.to_view() for item in items],
    }
    _post_json(settings.webhook_url, payload, "Webhook")


def _post_json(url: str, payload: dict[str, Any], label: str) -> None:
    endpoint = urlsplit(url)
    if endpoint.scheme == "https":
        connection = HTTPSConnection(endpoint.netloc)
    else:
        connection = HTTPConnection(endpoint.netloc)

    body = dumps(payload, default=str).encode("utf-8")
    path = endpoint.path or "/"
    if endpoint.query:
        path = f"{path}?{endpoint.query}"

    try:
        connection.request("POST", path, body=body, headers={"Content-Type": "application/json"})
        response = connection.getresponse()
        if response.status >= 300:
            LOG.warning("%s returned %s: %s", label, response.status, response.reason)
    except OSError as error:
        LOG.warning("Failed to send %s notification: %s", label, error)
    finally:
        connection.close()
