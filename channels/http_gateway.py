"""
HTTP gateway sender: shared transport for push and SMS providers.

The gateway receives a JSON POST and answers with a JSON body carrying
the provider message id. Response classification:
  2xx                       → delivered
  429, 5xx, network errors  → transient
  other 4xx                 → permanent (invalid recipient, bad payload)
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx

from channels.base import ChannelError, ChannelSender, SendResult
from config.settings import ChannelConfig

logger = structlog.get_logger()

TRANSIENT_STATUS = {408, 425, 429}


def classify_response(response: httpx.Response) -> SendResult:
    code = response.status_code
    if 200 <= code < 300:
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        message_id = ""
        if isinstance(payload, dict):
            message_id = str(payload.get("id") or payload.get("message_id") or "")
        return SendResult.ok(message_id)

    detail = response.text[:200]
    if code in TRANSIENT_STATUS or code >= 500:
        return SendResult.transient(f"gateway {code}: {detail}")
    return SendResult.permanent(f"gateway {code}: {detail}")


class HttpGatewaySender(ChannelSender):
    """
    Base for gateway-backed channels. Subclasses build the JSON payload.
    An httpx.AsyncClient may be injected (tests use httpx.MockTransport).
    """

    endpoint: str = "/send"

    def __init__(self, config: Optional[ChannelConfig] = None, client: Optional[httpx.AsyncClient] = None):
        super().__init__(config)
        self.gateway_url: str = self.credential("gateway_url")
        self.api_key: str = self.credential("api_key")
        self._client = client
        self._owns_client = client is None

    @property
    def dry_run(self) -> bool:
        return not self.gateway_url and self._client is None

    @abc.abstractmethod
    def build_payload(self, recipient: str, subject: Optional[str], body: str, metadata: dict[str, Any]) -> dict[str, Any]:
        ...

    def validate_recipient(self, recipient: str) -> str:
        return recipient.strip()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._client = httpx.AsyncClient(
                base_url=self.gateway_url,
                headers=headers,
                timeout=self.config.send_timeout_seconds,
            )
            self._owns_client = True
        return self._client

    async def _do_send(
        self, recipient: str, subject: Optional[str], body: str, metadata: dict[str, Any],
    ) -> SendResult:
        recipient = self.validate_recipient(recipient)
        payload = self.build_payload(recipient, subject, body, metadata)

        if self.dry_run:
            logger.info("gateway_send_dry_run", channel=self.channel_type.value, to=recipient)
            return SendResult.ok()

        client = await self._get_client()
        try:
            response = await client.post(self.endpoint, json=payload)
        except httpx.HTTPError as e:
            raise ChannelError(f"gateway unreachable: {e}", self.channel_type.value, retryable=True) from e

        result = classify_response(response)
        logger.info("gateway_send",
                    channel=self.channel_type.value,
                    to=recipient,
                    status_code=response.status_code,
                    result=result.status.value)
        return result

    async def shutdown(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()

    async def health_check(self) -> dict[str, Any]:
        health = await super().health_check()
        health["dry_run"] = self.dry_run
        return health
