"""
Notification sinks: where alerts for actionable emails go.

Each sink knows whether it is configured, how to shape its payload, and
how to deliver it once. Retrying is the dispatcher's job, not the sink's.
deliver() raises DispatchFailure on any failure, including timeouts.
check() makes one cheap round trip to confirm the sink is reachable and
raises DispatchFailure the same way.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

import httpx

from inboxsync.agent.schemas import EmailRecord
from inboxsync.errors import DispatchFailure

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200
WEBHOOK_USER_AGENT = "inbox-sync-webhook/1.0"
WEBHOOK_SOURCE = "inbox-sync"
WEBHOOK_VERSION = "1.0.0"


class NotificationSink(Protocol):
    name: str

    def is_configured(self) -> bool: ...

    def build_payload(self, record: EmailRecord) -> dict: ...

    async def deliver(self, payload: dict) -> None: ...

    async def check(self) -> None: ...

    async def close(self) -> None: ...


def _preview(body: str) -> str:
    if len(body) > PREVIEW_CHARS:
        return body[:PREVIEW_CHARS] + "..."
    return body


class SlackSink:
    """Posts a formatted message to one Slack channel via chat.postMessage."""

    name = "slack"

    def __init__(
        self,
        bot_token: str,
        channel_id: str,
        api_url: str = "https://slack.com/api/chat.postMessage",
        auth_test_url: str = "https://slack.com/api/auth.test",
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._token = bot_token
        self._channel = channel_id
        self._url = api_url
        self._auth_url = auth_test_url
        self._http = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)

    def is_configured(self) -> bool:
        return bool(self._token and self._channel)

    def build_payload(self, record: EmailRecord) -> dict:
        category = record.category.value if record.category else ""
        return {
            "channel": self._channel,
            "text": "New Interested Email Received!",
            "blocks": [
                {
                    "type": "header",
                    "text": {"type": "plain_text", "text": "New Interested Email!"},
                },
                {
                    "type": "section",
                    "fields": [
                        {"type": "mrkdwn", "text": f"*From:*\n{record.sender}"},
                        {"type": "mrkdwn", "text": f"*Account:*\n{record.account_email}"},
                        {"type": "mrkdwn", "text": f"*Date:*\n{record.date.isoformat()}"},
                        {"type": "mrkdwn", "text": f"*Category:*\n{category}"},
                    ],
                },
                {
                    "type": "section",
                    "text": {"type": "mrkdwn", "text": f"*Subject:*\n{record.subject}"},
                },
                {
                    "type": "section",
                    "text": {"type": "mrkdwn", "text": f"*Preview:*\n{_preview(record.body)}"},
                },
                {"type": "divider"},
                {
                    "type": "context",
                    "elements": [
                        {
                            "type": "mrkdwn",
                            "text": f"Email ID: {record.id} | Folder: {record.folder}",
                        }
                    ],
                },
            ],
        }

    async def deliver(self, payload: dict) -> None:
        await self._call(self._url, payload, "message")

    async def check(self) -> None:
        """Verify the bot token with auth.test."""
        if not self.is_configured():
            raise DispatchFailure("Slack not configured")
        data = await self._call(self._auth_url, {}, "auth test")
        logger.info(
            "notify.slack_check_ok",
            extra={"action": "notify.slack_check_ok", "team": data.get("team"), "user": data.get("user")},
        )

    async def _call(self, url: str, payload: dict, what: str) -> dict:
        try:
            resp = await self._http.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {self._token}"},
            )
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DispatchFailure(f"Slack {what} failed: {e}") from e

        # Slack reports most failures as HTTP 200 with ok=false
        if not data.get("ok", False):
            raise DispatchFailure(f"Slack rejected {what}: {data.get('error', 'unknown')}")
        return data

    async def close(self) -> None:
        await self._http.aclose()


class WebhookSink:
    """POSTs a JSON event to a generic outbound endpoint."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        event_type: str = "interested_email",
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = url
        self._event_type = event_type
        self._http = httpx.AsyncClient(
            timeout=timeout_seconds,
            headers={"User-Agent": WEBHOOK_USER_AGENT},
            transport=transport,
        )

    def is_configured(self) -> bool:
        return bool(self._url)

    def build_payload(self, record: EmailRecord) -> dict:
        now = datetime.now(timezone.utc).isoformat()
        return {
            "event": self._event_type,
            "timestamp": now,
            "data": {
                "id": record.id,
                "subject": record.subject,
                "from": record.sender,
                "to": record.to,
                "account": record.account,
                "account_email": record.account_email,
                "category": record.category.value if record.category else None,
                "date": record.date.isoformat(),
                "folder": record.folder,
                "preview": record.body[:PREVIEW_CHARS],
                "message_id": record.message_id,
            },
            "metadata": {
                "source": WEBHOOK_SOURCE,
                "version": WEBHOOK_VERSION,
                "processed_at": now,
            },
        }

    async def deliver(self, payload: dict) -> None:
        try:
            resp = await self._http.post(self._url, json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise DispatchFailure(f"Webhook delivery failed: {e}") from e

    async def check(self) -> None:
        """POST a webhook_test event. The receiver must answer 2xx."""
        if not self.is_configured():
            raise DispatchFailure("Webhook URL not configured")
        now = datetime.now(timezone.utc).isoformat()
        await self.deliver({
            "event": "webhook_test",
            "timestamp": now,
            "data": {"message": "Test webhook from inbox-sync", "test": True},
            "metadata": {
                "source": WEBHOOK_SOURCE,
                "version": WEBHOOK_VERSION,
                "processed_at": now,
            },
        })

    async def close(self) -> None:
        await self._http.aclose()
