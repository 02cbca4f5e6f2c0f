"""
Outbound email through the Brevo transactional REST API.

Notification delivery is best-effort: ``send_email`` never raises, it logs
and returns False when the message could not be handed to Brevo.
"""

import logging
from typing import Iterable, List, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from signoff.config import settings

logger = structlog.get_logger()
_std_logger = logging.getLogger(__name__)

BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"
MAX_ATTEMPTS = 3

_http_client: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(timeout=httpx.Timeout(10.0, connect=5.0))
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None and not _http_client.is_closed:
        await _http_client.aclose()
    _http_client = None


class TransientDeliveryError(Exception):
    """Brevo 5xx or a network failure; worth another attempt."""


def _recipients(to_emails: Iterable[str]) -> list[dict]:
    seen: list[str] = []
    for email in to_emails:
        email = (email or "").strip().lower()
        if email and email not in seen:
            seen.append(email)
    return [{"email": email} for email in seen]


def build_payload(
    to_emails: Iterable[str],
    subject: str,
    html_content: str,
    tags: Optional[List[str]] = None,
) -> dict:
    payload = {
        "sender": {"name": settings.APP_NAME, "email": settings.EMAIL_FROM_ADDRESS},
        "to": _recipients(to_emails),
        "subject": subject,
        "htmlContent": html_content,
    }
    if tags:
        payload["tags"] = list(tags)
    return payload


async def _post_once(headers: dict, payload: dict) -> Optional[str]:
    """One delivery attempt. Returns the Brevo message id, None on a 4xx."""
    try:
        response = await get_http_client().post(BREVO_API_URL, headers=headers, json=payload)
    except httpx.TransportError as exc:
        raise TransientDeliveryError(str(exc)) from exc

    if response.status_code in (201, 202):
        return response.json().get("messageId") or ""
    if response.status_code >= 500:
        raise TransientDeliveryError(f"Brevo returned {response.status_code}")

    logger.error(
        "email_rejected_brevo",
        status_code=response.status_code,
        response=response.text[:500],
        subject=payload["subject"],
    )
    return None


async def send_email(
    to_emails: List[str],
    subject: str,
    html_content: str,
    tags: Optional[List[str]] = None,
) -> bool:
    """
    Hand one message to Brevo, retrying transient failures with exponential
    back-off. ``tags`` carry the notification kind (e.g. ``approval_escalated``)
    so deliveries can be filtered in the Brevo console.
    """
    if not settings.BREVO_API_KEY:
        logger.warning("email_skipped_no_api_key", subject=subject)
        return False

    payload = build_payload(to_emails, subject, html_content, tags)
    if not payload["to"]:
        logger.warning("email_no_recipients", subject=subject)
        return False

    headers = {
        "accept": "application/json",
        "api-key": settings.BREVO_API_KEY,
        "content-type": "application/json",
    }
    if not settings.is_production and settings.ENVIRONMENT == "test":
        # Brevo validates the request but drops the message
        headers["X-Sib-Sandbox"] = "drop"

    try:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransientDeliveryError),
            stop=stop_after_attempt(MAX_ATTEMPTS),
            wait=wait_exponential(multiplier=1, min=2, max=10),
            before_sleep=before_sleep_log(_std_logger, logging.WARNING),
        ):
            with attempt:
                message_id = await _post_once(headers, payload)
    except RetryError as exc:
        logger.error(
            "email_retries_exhausted",
            error=str(exc.last_attempt.exception()),
            subject=subject,
            attempts=MAX_ATTEMPTS,
        )
        return False

    if message_id is None:
        return False
    logger.info(
        "email_sent_brevo",
        to=[r["email"] for r in payload["to"]],
        subject=subject,
        message_id=message_id,
    )
    return True
