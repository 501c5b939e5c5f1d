"""Slack Web API client used by the notification handlers.

Only ``chat.postMessage`` is needed: a root message per ticket and threaded
replies under it. Any failure is raised as ``TransientDeliveryError`` so the
outbox defers and retries the event.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import httpx

from common_core.config import settings
from common_core.errors import TransientDeliveryError

log = logging.getLogger("helpdesk.slack")


def with_cc(text: str, cc_ids: Optional[Sequence[str]]) -> str:
    ids = [i for i in (cc_ids or []) if i]
    if not ids:
        return text
    return f"{text}\nCC: " + " ".join(f"<@{i}>" for i in ids)


class SlackChatChannel:
    def __init__(
        self,
        token: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.token = settings.slack_bot_token if token is None else token
        self.api_url = (api_url or settings.slack_api_url).rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _post(self, body: dict) -> str:
        headers = {"Authorization": f"Bearer {self.token}"}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                resp = client.post(f"{self.api_url}/chat.postMessage", json=body, headers=headers)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransientDeliveryError("SLACK_UNAVAILABLE", str(e)[:300]) from e

        if not data.get("ok"):
            raise TransientDeliveryError("SLACK_API_ERROR", str(data.get("error") or "unknown"))
        return str(data.get("ts") or "")

    def post_message(self, channel: str, text: str, cc_ids: Optional[Sequence[str]] = None) -> str:
        ts = self._post({"channel": channel, "text": with_cc(text, cc_ids)})
        log.info("slack_message_posted")
        return ts

    def post_thread_reply(
        self, channel: str, thread_id: str, text: str, cc_ids: Optional[Sequence[str]] = None
    ) -> str:
        ts = self._post({"channel": channel, "text": with_cc(text, cc_ids), "thread_ts": thread_id})
        log.info("slack_thread_reply_posted")
        return ts
