"""
Outbound postback client.

One form-encoded POST per call, bounded by connect/read timeouts. No retries:
callers decide what a failure means.
"""

import time
from datetime import UTC, datetime

import httpx

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.subject_domain import PreferenceSnapshot, Subject

logger = get_logger(__name__)

BODY_EXCERPT_LIMIT = 500
WRITE_TIMEOUT_SECONDS = 10.0
POOL_TIMEOUT_SECONDS = 5.0


class WebhookDeliveryError(Exception):
    """Non-2xx answer or transport failure."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body_excerpt: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body_excerpt = body_excerpt


def iso_utc(value: datetime | None) -> str:
    """ISO-8601 in UTC with a trailing Z, empty for unknown."""
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_payload(
    event: str,
    subject: Subject,
    snapshot: PreferenceSnapshot,
    *,
    source: str = "",
    pending_token: str | None = None,
    secret: str | None = None,
    sent_at: datetime | None = None,
) -> dict[str, str]:
    """Form fields posted to the endpoint; every value is a string."""
    if snapshot.email_digests is None:
        email_digests = ""
    else:
        email_digests = "1" if snapshot.email_digests else "0"

    payload = {
        "event": str(event),
        "user_id": str(subject.id),
        "username": subject.username or "",
        "email": subject.email or "",
        "registered_at": iso_utc(subject.created_at),
        "email_digests": email_digests,
        "digest_after_minutes": str(int(snapshot.digest_after_minutes or 0)),
        "email_level": "" if snapshot.email_level is None else str(snapshot.email_level),
        "sent_at_utc": iso_utc(sent_at or datetime.now(UTC)),
        "secret": settings.UNSUB_UPDATE_SHARED_SECRET if secret is None else secret,
        "source": source or "",
    }
    if pending_token:
        payload["pending_token"] = pending_token
    return payload


class UnsubWebhookClient:
    def __init__(
        self,
        endpoint_url: str | None = None,
        open_timeout: float | None = None,
        read_timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.endpoint_url = endpoint_url or settings.UNSUB_UPDATE_ENDPOINT_URL
        timeout = httpx.Timeout(
            connect=open_timeout or settings.UNSUB_UPDATE_OPEN_TIMEOUT_SECONDS,
            read=read_timeout or settings.UNSUB_UPDATE_READ_TIMEOUT_SECONDS,
            write=WRITE_TIMEOUT_SECONDS,
            pool=POOL_TIMEOUT_SECONDS,
        )
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def post(self, payload: dict[str, str]) -> int:
        """
        POST the payload form-encoded.

        Returns:
            int: The 2xx status code

        Raises:
            WebhookDeliveryError: On a non-2xx status or any transport error
        """
        start = time.time()
        try:
            response = await self._client.post(self.endpoint_url, data=payload)
        except httpx.HTTPError as e:
            raise WebhookDeliveryError(f"{type(e).__name__}: {e}") from e

        duration_ms = round((time.time() - start) * 1000, 1)
        if not 200 <= response.status_code < 300:
            raise WebhookDeliveryError(
                f"Endpoint answered {response.status_code}",
                status_code=response.status_code,
                body_excerpt=response.text[:BODY_EXCERPT_LIMIT],
            )

        logger.debug(
            "Postback accepted",
            status_code=response.status_code,
            duration_ms=duration_ms,
            endpoint=self.endpoint_url,
        )
        return response.status_code
