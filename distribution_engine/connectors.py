"""Channel connectors: the per-channel publish capability.

A connector is any object with ``publish`` and ``normalize_error``; the
dispatcher finds it by channel name in a ConnectorRegistry. The two
connectors here follow the live/dry-run pattern: in dry-run mode the payload
is recorded locally and a mock external id is returned without any API call.
"""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Protocol

from distribution_engine.errors import (
    ConnectorError,
    PermanentError,
    RateLimitedError,
    TransientError,
)
from distribution_engine.models import ContentSnapshot


@dataclass(frozen=True)
class PublishReceipt:
    external_id: str
    url: str = ""


class ChannelConnector(Protocol):
    def publish(
        self,
        snapshot: ContentSnapshot,
        account_ref: str,
        customization: dict[str, Any],
        *,
        timeout: float,
        idempotency_key: str,
    ) -> PublishReceipt: ...

    def normalize_error(self, exc: Exception) -> ConnectorError: ...


class ConnectorRegistry:
    """Connectors keyed by channel name."""

    def __init__(self, connectors: dict[str, ChannelConnector] | None = None) -> None:
        self._connectors: dict[str, ChannelConnector] = dict(connectors or {})

    def register(self, channel: str, connector: ChannelConnector) -> None:
        self._connectors[channel] = connector

    def get(self, channel: str) -> ChannelConnector | None:
        return self._connectors.get(channel)

    def __contains__(self, channel: object) -> bool:
        return channel in self._connectors

    @property
    def channels(self) -> list[str]:
        return sorted(self._connectors)


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header (delta seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def classify_http_status(
    status: int, message: str, retry_after: float | None = None,
) -> ConnectorError:
    if status == 429:
        return RateLimitedError(message, retry_after=retry_after)
    if status == 408 or status >= 500:
        return TransientError(message)
    return PermanentError(message)


def normalize_exception(exc: Exception) -> ConnectorError:
    """Map an exception raised while publishing onto the error taxonomy."""
    if isinstance(exc, ConnectorError):
        return exc
    if isinstance(exc, urllib.error.HTTPError):
        try:
            body = exc.read().decode("utf-8", errors="replace")
        except (OSError, AttributeError):
            body = ""
        retry_after = parse_retry_after(exc.headers.get("Retry-After")) if exc.headers else None
        message = f"HTTP {exc.code}: {body[:200]}" if body else f"HTTP {exc.code}"
        return classify_http_status(exc.code, message, retry_after)
    if isinstance(exc, TimeoutError):
        return TransientError(f"Timed out: {exc}")
    if isinstance(exc, urllib.error.URLError):
        return TransientError(f"Connection error: {exc.reason}")
    if isinstance(exc, OSError):
        return TransientError(f"Network error: {exc}")
    if isinstance(exc, ValueError):
        return PermanentError(str(exc))
    return TransientError(f"{type(exc).__name__}: {exc}")


def _post_json(
    url: str, payload: dict[str, Any], headers: dict[str, str], timeout: float,
) -> dict[str, Any]:
    data = json.dumps(payload).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/json", **headers},
        method="POST",
    )
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        body = resp.read().decode("utf-8")
        if body:
            return json.loads(body)
        return {"status": resp.status}


@dataclass
class WebhookConfig:
    url: str
    headers: dict[str, str] = field(default_factory=dict)


class WebhookConnector:
    """Posts the content snapshot as JSON to a webhook endpoint.

    Suits chat webhooks, CMS ingestion endpoints and mail relays. Keys in the
    target's customization are merged into the payload.
    """

    def __init__(self, config: WebhookConfig, live: bool = False) -> None:
        self.config = config
        self._live = live
        self._sent: list[dict[str, Any]] = []

    def build_payload(
        self, snapshot: ContentSnapshot, account_ref: str, customization: dict[str, Any],
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "content_id": snapshot.content_id,
            "title": snapshot.title,
            "body": snapshot.body,
            "url": snapshot.canonical_url,
            "account": account_ref,
        }
        payload.update(customization)
        return payload

    def publish(
        self,
        snapshot: ContentSnapshot,
        account_ref: str,
        customization: dict[str, Any],
        *,
        timeout: float,
        idempotency_key: str,
    ) -> PublishReceipt:
        payload = self.build_payload(snapshot, account_ref, customization)

        if self._live:
            headers = {**self.config.headers, "Idempotency-Key": idempotency_key}
            response = _post_json(self.config.url, payload, headers, timeout)
            receipt = PublishReceipt(
                external_id=str(response.get("id") or idempotency_key),
                url=str(response.get("url", "")),
            )
        else:
            receipt = PublishReceipt(external_id=f"webhook-{len(self._sent) + 1:06d}")

        self._sent.append(payload)
        return receipt

    def normalize_error(self, exc: Exception) -> ConnectorError:
        return normalize_exception(exc)

    @property
    def messages_sent(self) -> int:
        return len(self._sent)


@dataclass
class MastodonConfig:
    instance_url: str
    access_tokens: dict[str, str] = field(default_factory=dict)  # account_ref -> token
    visibility: str = "public"
    max_chars: int = 500


class MastodonConnector:
    """Publishes statuses to a Mastodon instance, one token per account."""

    def __init__(self, config: MastodonConfig, live: bool = False) -> None:
        self.config = config
        self._live = live
        self._posted: list[dict[str, Any]] = []

    def format_status(self, snapshot: ContentSnapshot) -> str:
        text = "\n\n".join(p for p in (snapshot.title, snapshot.canonical_url) if p)
        return text[:self.config.max_chars]

    def publish(
        self,
        snapshot: ContentSnapshot,
        account_ref: str,
        customization: dict[str, Any],
        *,
        timeout: float,
        idempotency_key: str,
    ) -> PublishReceipt:
        token = self.config.access_tokens.get(account_ref)
        if not token:
            raise PermanentError(f"No Mastodon access token for account {account_ref!r}")

        status = customization.get("status") or self.format_status(snapshot)
        if not 0 < len(status) <= self.config.max_chars:
            raise PermanentError("Status exceeds character limit or is empty")

        payload = {
            "status": status,
            "visibility": customization.get("visibility", self.config.visibility),
        }

        if self._live:
            result = _post_json(
                f"{self.config.instance_url}/api/v1/statuses",
                payload,
                {"Authorization": f"Bearer {token}", "Idempotency-Key": idempotency_key},
                timeout,
            )
            self._posted.append(result)
            return PublishReceipt(external_id=str(result["id"]), url=str(result.get("url", "")))

        result = {
            "id": f"toot-{len(self._posted) + 1:06d}",
            "url": f"{self.config.instance_url}/@{account_ref}/{len(self._posted) + 1}",
            **payload,
        }
        self._posted.append(result)
        return PublishReceipt(external_id=result["id"], url=result["url"])

    def normalize_error(self, exc: Exception) -> ConnectorError:
        return normalize_exception(exc)

    @property
    def post_count(self) -> int:
        return len(self._posted)
