"""Mailchimp Marketing 3.0 campaigns client with a typed send-checklist parser."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from config import AppConfig
from models import Integration
from pipeline.failures import ProviderResponseError
from pipeline.http_client import JsonHttpClient


@dataclass(frozen=True)
class ChecklistItem:
    type: str
    heading: str
    details: str

    def describe(self) -> str:
        return f"{self.heading}: {self.details}"


@dataclass(frozen=True)
class SendChecklist:
    """Result of ``GET /campaigns/{id}/send-checklist``."""

    is_ready: bool
    items: tuple[ChecklistItem, ...]

    @property
    def errors(self) -> tuple[ChecklistItem, ...]:
        return tuple(item for item in self.items if item.type == "error")

    @property
    def warnings(self) -> tuple[ChecklistItem, ...]:
        return tuple(item for item in self.items if item.type == "warning")


def parse_checklist(payload: dict[str, Any]) -> SendChecklist:
    if not isinstance(payload.get("is_ready"), bool):
        raise ProviderResponseError("Mailchimp send-checklist response has no is_ready flag")
    items = []
    for raw in payload.get("items") or []:
        if not isinstance(raw, dict):
            continue
        items.append(
            ChecklistItem(
                type=str(raw.get("type", "")),
                heading=str(raw.get("heading", "")),
                details=str(raw.get("details", "")),
            )
        )
    return SendChecklist(is_ready=payload["is_ready"], items=tuple(items))


def mailchimp_base_url(server_prefix: str) -> str:
    return f"https://{server_prefix}.api.mailchimp.com/3.0"


class MailchimpClient:
    """Regular-campaign lifecycle calls against one Mailchimp data center."""

    def __init__(self, *, access_token: str, server_prefix: str, max_attempts: int) -> None:
        self._http = JsonHttpClient(
            provider="mailchimp",
            base_url=mailchimp_base_url(server_prefix),
            headers={"Authorization": f"Bearer {access_token}"},
            max_attempts=max_attempts,
        )

    def create_campaign(
        self,
        *,
        list_id: str,
        subject_line: str,
        from_name: str,
        reply_to: str,
    ) -> str:
        payload = self._http.post(
            "/campaigns",
            {
                "type": "regular",
                "recipients": {"list_id": list_id},
                "settings": {
                    "subject_line": subject_line,
                    "from_name": from_name,
                    "reply_to": reply_to,
                },
            },
        )
        campaign_id = payload.get("id")
        if not isinstance(campaign_id, str) or not campaign_id:
            raise ProviderResponseError("Mailchimp campaign response carries no id")
        return campaign_id

    def get_campaign_status(self, campaign_id: str) -> str:
        payload = self._http.get(f"/campaigns/{campaign_id}?fields=status")
        status = payload.get("status")
        if not isinstance(status, str):
            raise ProviderResponseError(f"Mailchimp campaign {campaign_id} has no status")
        return status

    def set_content(self, campaign_id: str, html: str) -> None:
        self._http.put(f"/campaigns/{campaign_id}/content", {"html": html})

    def send_checklist(self, campaign_id: str) -> SendChecklist:
        return parse_checklist(self._http.get(f"/campaigns/{campaign_id}/send-checklist"))

    def schedule(self, campaign_id: str, schedule_time: str) -> None:
        self._http.post(
            f"/campaigns/{campaign_id}/actions/schedule", {"schedule_time": schedule_time}
        )

    def send(self, campaign_id: str) -> None:
        self._http.post(f"/campaigns/{campaign_id}/actions/send")


def build_mailchimp_client(config: AppConfig, integration: Integration) -> MailchimpClient:
    if not integration.server_prefix:
        raise ValueError("Mailchimp integration has no server prefix")
    return MailchimpClient(
        access_token=integration.access_token,
        server_prefix=integration.server_prefix,
        max_attempts=config.max_external_retries,
    )
