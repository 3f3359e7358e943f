"""Action Network v2 messages API client with a typed message parser."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from config import AppConfig
from models import Integration
from pipeline.failures import ProviderResponseError
from pipeline.http_client import JsonHttpClient

ACTION_NETWORK_BASE_URL = "https://actionnetwork.org/api/v2"
IDENTIFIER_PREFIX = "action_network:"
CALCULATING_STATUS = "calculating"


@dataclass(frozen=True)
class ActionNetworkMessage:
    """The parts of an OSDI message resource the send pipeline relies on."""

    message_id: str
    url: str
    status: str | None
    total_targeted: int | None
    schedule_url: str
    send_url: str

    @property
    def calculating(self) -> bool:
        return self.status == CALCULATING_STATUS


def parse_message(
    payload: dict[str, Any], *, base_url: str = ACTION_NETWORK_BASE_URL
) -> ActionNetworkMessage:
    """Parse a message resource, or raise ``ProviderResponseError`` when it has no id."""
    links = payload.get("_links") if isinstance(payload.get("_links"), dict) else {}
    self_href = _link_href(links, "self")

    message_id = None
    identifiers = payload.get("identifiers")
    if isinstance(identifiers, list) and identifiers and isinstance(identifiers[0], str):
        message_id = identifiers[0].removeprefix(IDENTIFIER_PREFIX) or None
    if message_id is None and self_href:
        message_id = self_href.rstrip("/").rsplit("/", 1)[-1] or None
    if message_id is None:
        raise ProviderResponseError("Action Network message response carries no message id")

    url = self_href or f"{base_url.rstrip('/')}/messages/{message_id}"
    total_targeted = payload.get("total_targeted")
    status = payload.get("status")
    return ActionNetworkMessage(
        message_id=message_id,
        url=url,
        status=str(status) if status is not None else None,
        total_targeted=int(total_targeted) if isinstance(total_targeted, (int, float)) else None,
        schedule_url=_link_href(links, "osdi:schedule_helper") or f"{url}/schedule/",
        send_url=_link_href(links, "osdi:send_helper") or f"{url}/send/",
    )


def _link_href(links: dict[str, Any], name: str) -> str | None:
    link = links.get(name)
    if isinstance(link, dict) and isinstance(link.get("href"), str) and link["href"]:
        return link["href"]
    return None


class ActionNetworkClient:
    """Create, poll and dispatch messages for one Action Network group."""

    def __init__(
        self,
        *,
        api_key: str,
        max_attempts: int,
        base_url: str = ACTION_NETWORK_BASE_URL,
    ) -> None:
        self._base_url = base_url
        self._http = JsonHttpClient(
            provider="action_network",
            base_url=base_url,
            headers={"OSDI-API-Token": api_key},
            max_attempts=max_attempts,
        )

    def create_message(
        self,
        *,
        subject: str,
        body: str,
        from_name: str,
        reply_to: str,
    ) -> ActionNetworkMessage:
        payload = self._http.post(
            "/messages",
            {"subject": subject, "body": body, "from": from_name, "reply_to": reply_to},
        )
        return parse_message(payload, base_url=self._base_url)

    def get_message(self, url_or_id: str) -> ActionNetworkMessage:
        if not url_or_id.startswith(("http://", "https://")):
            url_or_id = f"/messages/{url_or_id}"
        return parse_message(self._http.get(url_or_id), base_url=self._base_url)

    def schedule(self, message: ActionNetworkMessage, scheduled_date: str) -> None:
        self._http.post(message.schedule_url, {"scheduled_date": scheduled_date})

    def send(self, message: ActionNetworkMessage) -> None:
        self._http.post(message.send_url, {})


def build_action_network_client(
    config: AppConfig, integration: Integration
) -> ActionNetworkClient:
    return ActionNetworkClient(
        api_key=integration.access_token,
        max_attempts=config.max_external_retries,
    )
