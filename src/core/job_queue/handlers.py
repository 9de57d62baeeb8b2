"""Built-in job handlers."""

from __future__ import annotations

import hashlib
import hmac
import ipaddress
import json
import logging
import time
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlsplit

import httpx

from src.core.config import Settings, get_settings
from src.core.job_queue.core import HandlerRegistry, JobExecutionError, JobHandler, JobType

logger = logging.getLogger(__name__)

SENSITIVE_HEADERS = frozenset({
    "authorization",
    "x-api-key",
    "x-auth-token",
    "cookie",
    "set-cookie",
    "x-csrf-token",
    "x-xsrf-token",
})

BLOCKED_HOSTNAMES = frozenset({
    "localhost",
    "metadata.google.internal",
    "instance-data",
})

MAX_HEADER_VALUE_BYTES = 8 * 1024
SIGNATURE_HEADER = "X-Webhook-Signature"


def redact_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {
        name: "[REDACTED]" if name.lower() in SENSITIVE_HEADERS else value
        for name, value in headers.items()
    }


def sanitize_url(url: str) -> str:
    """Drop credentials, query and fragment before logging a URL."""
    parts = urlsplit(url)
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return f"{parts.scheme}://{host}{parts.path}"


def validate_webhook_url(url: Any) -> str:
    """Require https and a public destination host.

    Raises:
        ValueError: if the URL is malformed or targets an internal address.
    """
    if not isinstance(url, str) or not url:
        raise ValueError("webhook_url is required")

    parts = urlsplit(url)
    if parts.scheme != "https":
        raise ValueError("webhook_url must use https")

    host = (parts.hostname or "").lower()
    if not host:
        raise ValueError("webhook_url has no host")
    if host in BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        raise ValueError(f"webhook_url host is not allowed: {host}")

    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return url

    if (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_unspecified
    ):
        raise ValueError(f"webhook_url address is not allowed: {host}")
    return url


def sign_body(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookDeliveryHandler(JobHandler):
    """POSTs an event to a customer webhook endpoint.

    Payload::

        {
            "webhook_url": "https://example.com/hooks",
            "event_type": "project.suspended",
            "event_id": "evt_123",          # optional
            "webhook_id": "wh_1",           # optional
            "headers": {"X-Custom": "1"},   # optional
            "data": {...},
        }

    A non-2xx response raises ``JobExecutionError`` so the queue retries the
    delivery with backoff.
    """

    def __init__(
        self,
        signing_secret: str = "",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._signing_secret = signing_secret
        self._request_timeout = timeout_seconds
        self._client = client
        # Leave headroom over the request timeout before the executor cancels us.
        self.timeout_seconds = timeout_seconds + 5

    @property
    def name(self) -> str:
        return JobType.DELIVER_WEBHOOK.value

    def _parse(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = validate_webhook_url(payload.get("webhook_url"))

        event_type = payload.get("event_type")
        if not isinstance(event_type, str) or not event_type:
            raise ValueError("event_type is required")

        headers = payload.get("headers") or {}
        if not isinstance(headers, Mapping):
            raise ValueError("headers must be an object")
        for key, value in headers.items():
            if not isinstance(value, str):
                raise ValueError(f"header {key} must be a string")
            if len(value.encode("utf-8")) > MAX_HEADER_VALUE_BYTES:
                raise ValueError(f"header {key} is too large")

        return {
            "url": url,
            "event_type": event_type,
            "event_id": payload.get("event_id"),
            "webhook_id": payload.get("webhook_id"),
            "headers": dict(headers),
            "data": payload.get("data"),
        }

    def _build_request(self, params: Dict[str, Any]) -> tuple:
        body = json.dumps(
            {
                "event_type": params["event_type"],
                "event_id": params["event_id"],
                "data": params["data"],
            },
            separators=(",", ":"),
        ).encode("utf-8")

        headers = {
            "Content-Type": "application/json",
            "User-Agent": "control-plane-webhooks/1.0",
            "X-Webhook-Event": params["event_type"],
        }
        if params["event_id"]:
            headers["X-Webhook-Event-Id"] = str(params["event_id"])
        headers.update(params["headers"])
        if self._signing_secret:
            headers[SIGNATURE_HEADER] = sign_body(body, self._signing_secret)
        return body, headers

    async def handle(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        params = self._parse(payload)
        body, headers = self._build_request(params)
        target = sanitize_url(params["url"])

        logger.info(
            f"Delivering webhook {params['webhook_id'] or '-'} ({params['event_type']}) to {target}",
            extra={"extra_fields": {"headers": redact_headers(headers)}},
        )

        start = time.perf_counter()
        try:
            if self._client is not None:
                response = await self._client.post(
                    params["url"], content=body, headers=headers, timeout=self._request_timeout
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        params["url"], content=body, headers=headers, timeout=self._request_timeout
                    )
        except httpx.HTTPError as e:
            raise JobExecutionError(f"Webhook request to {target} failed: {e}") from e

        duration_ms = round((time.perf_counter() - start) * 1000, 2)

        if not 200 <= response.status_code < 300:
            raise JobExecutionError(
                f"Webhook endpoint {target} returned HTTP {response.status_code}"
            )

        logger.info(f"Webhook delivered to {target} ({response.status_code}, {duration_ms}ms)")
        return {"status_code": response.status_code, "duration_ms": duration_ms}


def register_builtin_handlers(
    registry: HandlerRegistry, settings: Optional[Settings] = None
) -> None:
    """Register the handlers shipped with the worker."""
    settings = settings or get_settings()
    handler = WebhookDeliveryHandler(
        signing_secret=settings.WEBHOOK_SIGNING_SECRET,
        timeout_seconds=settings.WEBHOOK_TIMEOUT_SECONDS,
    )
    registry.register(handler.name, handler)
