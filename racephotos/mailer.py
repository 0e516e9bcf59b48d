from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from typing import List, Optional, TypedDict

import httpx

from .infra.timings import timeit

logger = logging.getLogger(__name__)


@dataclass
class Attachment:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass
class EmailMessage:
    to: str
    subject: str
    html: str
    attachments: List[Attachment] = field(default_factory=list)
    reply_to: Optional[str] = None


class SendResult(TypedDict):
    success: bool
    message_id: Optional[str]
    error: Optional[str]
    attempts: int


class ResendMailer:
    """Resend HTTP API. ``send`` never raises; failures come back as results."""

    def __init__(
        self, http: httpx.AsyncClient, *, api_key: str, from_email: str,
        reply_to: str, api_url: str = "https://api.resend.com",
    ) -> None:
        self.http = http
        self.api_key = api_key
        self.from_email = from_email
        self.reply_to = reply_to
        self.api_url = api_url.rstrip("/")

    async def send(self, message: EmailMessage) -> SendResult:
        if not self.api_key:
            return _failed("RESEND_API_KEY is not set", 1)
        payload = {
            "from": self.from_email,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
            "reply_to": message.reply_to or self.reply_to,
            "attachments": [
                {
                    "filename": a.filename,
                    "content": base64.b64encode(a.content).decode(),
                    "content_type": a.content_type,
                }
                for a in message.attachments
            ],
        }
        try:
            async with timeit("email.send"):
                r = await self.http.post(
                    f"{self.api_url}/emails",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as exc:
            logger.warning("email send to %s failed: %s", message.to, exc)
            return _failed(str(exc) or type(exc).__name__, 1)
        if r.status_code >= 400:
            logger.warning(
                "email provider returned %s for %s", r.status_code, message.to
            )
            return _failed(f"email provider status {r.status_code}", 1)
        return {
            "success": True,
            "message_id": r.json().get("id"),
            "error": None,
            "attempts": 1,
        }


def _failed(error: str, attempts: int) -> SendResult:
    return {
        "success": False,
        "message_id": None,
        "error": error,
        "attempts": attempts,
    }


async def send_with_retry(
    mailer: ResendMailer, message: EmailMessage, *,
    max_attempts: int = 3, delay_seconds: float = 2.0,
) -> SendResult:
    """Fixed attempt count, linear backoff (delay * attempt) between tries."""
    last_error = "Unknown error"
    for attempt in range(1, max_attempts + 1):
        result = await mailer.send(message)
        if result["success"]:
            return {**result, "attempts": attempt}
        last_error = result["error"] or last_error
        if attempt < max_attempts:
            await asyncio.sleep(delay_seconds * attempt)
    return _failed(last_error, max_attempts)
