"""
SendGrid email transport.

POST /v3/mail/send with a single personalization. SendGrid answers 202 and
returns the provider message id in the X-Message-Id header. Custom args carry
the dedupe key so provider webhooks can be correlated back to the outbound
message.

API Docs: https://www.twilio.com/docs/sendgrid/api-reference/mail-send/mail-send
"""
from __future__ import annotations

import re
import structlog
from email.utils import parseaddr
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import CircuitBreaker, Transport, TransportError

logger = structlog.get_logger()

# The request never left the client
NOT_DELIVERED_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


def html_to_plain(html: str) -> str:
    """Best-effort HTML → plain text without external dependencies."""
    # Remove style/script blocks
    text = re.sub(r"<(style|script)[^>]*>.*?</\1>", "", html, flags=re.DOTALL | re.IGNORECASE)
    # Block elements → newlines
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</(p|div|h[1-6]|li|tr)>", "\n", text, flags=re.IGNORECASE)
    # Strip remaining tags
    text = re.sub(r"<[^>]+>", "", text)
    # Decode entities
    text = text.replace("&amp;", "&").replace("&lt;", "<").replace("&gt;", ">")
    text = text.replace("&nbsp;", " ").replace("&quot;", '"')
    # Collapse whitespace
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _error_details(response: httpx.Response) -> str:
    try:
        errors = response.json().get("errors", [])
    except ValueError:
        return response.text[:300]
    parts = [
        f"{e.get('field')}: {e.get('message')}" if e.get("field") else str(e.get("message", "error"))
        for e in errors if isinstance(e, dict)
    ]
    return ", ".join(parts) or response.text[:300]


class SendGridTransport(Transport):
    """SendGrid v3 REST client implementing the Transport contract."""

    channel = "email"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.sendgrid.com/v3",
        timeout_seconds: float = 30.0,
        categories: Optional[list[str]] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        super().__init__(breaker)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.categories = list(categories or [])
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_config(cls, config) -> SendGridTransport:
        return cls(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout_seconds=config.timeout_seconds,
            categories=config.categories,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    # Re-post only when the request never reached SendGrid. A read timeout or
    # dropped response can follow an accepted send.
    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        retry=retry_if_exception_type(NOT_DELIVERED_ERRORS),
        reraise=True,
    )
    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        return await client.request(method, path, **kwargs)

    def build_payload(self, from_address: str, to: str, subject: str, html: str,
                      custom_args: dict[str, Any]) -> dict[str, Any]:
        from_name, from_email = parseaddr(from_address)
        sender = {"email": from_email or from_address}
        if from_name:
            sender["name"] = from_name

        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": sender,
            "reply_to": {"email": sender["email"]},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": html_to_plain(html) or " "},
                {"type": "text/html", "value": html},
            ],
            "custom_args": {k: str(v) for k, v in custom_args.items() if v is not None},
        }
        if self.categories:
            payload["categories"] = self.categories
        return payload

    async def _do_send(self, from_address: str, to: str, subject: str, html: str,
                       correlation_id: str, custom_args: dict[str, Any]) -> str:
        payload = self.build_payload(
            from_address, to, subject, html,
            {**custom_args, "dedupe_key": correlation_id},
        )
        try:
            response = await self._request("POST", "/mail/send", json=payload)
        except httpx.HTTPError as e:
            raise TransportError(f"SendGrid request failed: {e}", self.channel,
                                 retryable=isinstance(e, NOT_DELIVERED_ERRORS)) from e

        if response.status_code >= 400:
            details = _error_details(response)
            logger.error("sendgrid_api_error",
                         status=response.status_code,
                         correlation_id=correlation_id,
                         body=details)
            raise TransportError(
                f"SendGrid rejected send ({response.status_code}): {details}",
                self.channel,
                retryable=response.status_code == 429 or response.status_code >= 500,
                status_code=response.status_code,
            )

        provider_id = response.headers.get("x-message-id", "")
        if not provider_id:
            logger.warning("sendgrid_missing_message_id",
                           status=response.status_code,
                           correlation_id=correlation_id)
            provider_id = correlation_id
        return provider_id

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
