"""Ticket e-mail senders."""

from __future__ import annotations
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from .config import MAIL_API_KEY, MAIL_API_URL, MAIL_BACKEND, MAIL_FROM
from .errors import BoxOfficeError
from .logs import get_logger

log = get_logger("mailer")

TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), "templates")
env = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=select_autoescape(["html"]),
)


class DeliveryFailed(BoxOfficeError):
    code = "delivery_failed"
    status_code = 502


def render_ticket_email(order: Dict[str, Any],
                        tickets: Sequence[Dict[str, Any]]) -> Dict[str, str]:
    """-> {"subject", "html"}"""
    title = order.get("event_title") or "your event"
    html = env.get_template("ticket_email.html").render(
        order=order, tickets=tickets, title=title,
    )
    return {"subject": f"Your tickets for {title}", "html": html}


class Mailer(ABC):
    @abstractmethod
    async def send(self, to: str, subject: str, html: str) -> None:
        """Raises DeliveryFailed when the message was not accepted."""


class LogMailer(Mailer):
    """Development sender: logs and keeps what it would have sent."""

    def __init__(self, fail_for: Optional[Sequence[str]] = None):
        self.sent: List[Dict[str, str]] = []
        self.fail_for = set(fail_for or ())

    async def send(self, to: str, subject: str, html: str) -> None:
        if to in self.fail_for:
            raise DeliveryFailed(f"refusing to deliver to {to}")
        self.sent.append({"to": to, "subject": subject, "html": html})
        log.info("mail to {}: {}", to, subject)


class HttpMailer(Mailer):
    """Transactional e-mail over an HTTP API (Resend compatible)."""

    def __init__(self, http: httpx.AsyncClient, api_url: str = MAIL_API_URL,
                 api_key: str = MAIL_API_KEY, sender: str = MAIL_FROM):
        self.http = http
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender

    async def send(self, to: str, subject: str, html: str) -> None:
        if not self.api_key:
            raise DeliveryFailed("mail API key is not configured")
        try:
            r = await self.http.post(
                self.api_url,
                json={
                    "from": self.sender,
                    "to": [to],
                    "subject": subject,
                    "html": html,
                },
                headers={"authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as e:
            raise DeliveryFailed(f"mail API unreachable: {e}") from e
        if r.status_code >= 400:
            raise DeliveryFailed(
                f"mail API rejected message: {r.status_code} {r.text[:200]}"
            )


def new_mailer(http: httpx.AsyncClient) -> Mailer:
    if MAIL_BACKEND == "http":
        return HttpMailer(http)
    return LogMailer()
