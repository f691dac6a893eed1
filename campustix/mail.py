from __future__ import annotations
import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx
from jinja2 import Environment, DictLoader, select_autoescape

from .errors import UnableToComplete
from .mail_templates import TEMPLATES

logger = logging.getLogger(__name__)


@dataclass
class Attachment:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass
class EmailMessage:
    to: List[str]
    subject: str
    html: str
    attachments: List[Attachment] = field(default_factory=list)


class MailTransport(ABC):
    @abstractmethod
    async def send(self, message: EmailMessage) -> None: ...


class LogMailTransport(MailTransport):
    """Writes messages to the log instead of delivering them (local dev)."""

    def __init__(self) -> None:
        self.sent: List[EmailMessage] = []

    async def send(self, message: EmailMessage) -> None:
        self.sent.append(message)
        logger.info(
            "mail (not delivered) to=%s subject=%r attachments=%s",
            ",".join(message.to), message.subject,
            [a.filename for a in message.attachments],
        )


class HttpMailTransport(MailTransport):
    """Transactional-mail HTTP API (Brevo v3 `smtp/email` payload)."""

    def __init__(self, *, api_url: str, api_key: str, sender_email: str,
                 sender_name: str, http: httpx.AsyncClient) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.sender = {"email": sender_email, "name": sender_name}
        self.http = http

    async def send(self, message: EmailMessage) -> None:
        body: Dict[str, Any] = {
            "sender": self.sender,
            "to": [{"email": addr} for addr in message.to],
            "subject": message.subject,
            "htmlContent": message.html,
        }
        if message.attachments:
            body["attachment"] = [
                {
                    "name": a.filename,
                    "content": base64.b64encode(a.content).decode(),
                }
                for a in message.attachments
            ]
        headers = {
            "accept": "application/json",
            "api-key": self.api_key,
            "content-type": "application/json",
        }
        try:
            r = await self.http.post(self.api_url, json=body, headers=headers)
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise UnableToComplete(
                f"Mail API rejected message: {e.response.status_code}"
            )
        except httpx.HTTPError as e:
            raise UnableToComplete(f"Mail API unavailable: {e}")


class Mailer:
    """Renders templated mails and hands them to a transport."""

    def __init__(self, transport: MailTransport, *,
                 admin_emails: Sequence[str] = (),
                 site_name: str = "CampusTix") -> None:
        self.transport = transport
        self.admin_emails = list(admin_emails)
        self.site_name = site_name
        self.env = Environment(
            loader=DictLoader(TEMPLATES),
            autoescape=select_autoescape(["html"]),
        )

    def render(self, template: str, data: Dict[str, Any]) -> str:
        tpl = self.env.get_template(f"{template}.html")
        return tpl.render(site_name=self.site_name, **data)

    async def send_mail(self, to: str | Sequence[str], subject: str,
                        template: str, data: Dict[str, Any],
                        attachments: Optional[List[Attachment]] = None
                        ) -> None:
        recipients = [to] if isinstance(to, str) else list(to)
        message = EmailMessage(
            to=recipients,
            subject=subject,
            html=self.render(template, data),
            attachments=list(attachments or []),
        )
        await self.transport.send(message)
        logger.info("mail %r sent to %s", subject, ", ".join(recipients))

    async def send_ticket_email(self, email: str, ticket: Dict[str, Any],
                                qr_png: bytes,
                                pdf: Optional[bytes] = None) -> None:
        data = dict(ticket)
        data["qrCodeBase64"] = base64.b64encode(qr_png).decode()
        attachments = [Attachment(
            filename=f"ticket-{ticket['ticketId']}.png",
            content=qr_png,
            content_type="image/png",
        )]
        if pdf is not None:
            attachments.append(Attachment(
                filename=f"ticket-{ticket['ticketId']}.pdf",
                content=pdf,
                content_type="application/pdf",
            ))
        await self.send_mail(
            email,
            f"Your Ticket for {ticket['eventName']}",
            "ticket-confirmation",
            data,
            attachments=attachments,
        )

    async def send_bulk_tickets(self, email: str, data: Dict[str, Any],
                                pdf: bytes, order_id: str) -> None:
        await self.send_mail(
            email,
            f"All Tickets for {data['eventName']}",
            "bulk-tickets",
            data,
            attachments=[Attachment(
                filename=f"tickets-{order_id}.pdf",
                content=pdf,
                content_type="application/pdf",
            )],
        )

    async def send_order_confirmation(self, email: str,
                                      data: Dict[str, Any]) -> None:
        await self.send_mail(
            email,
            f"Order Confirmation - {data['orderNumber']}",
            "order-confirmation",
            data,
        )

    async def send_payment_failed(self, email: str,
                                  data: Dict[str, Any]) -> None:
        await self.send_mail(
            email,
            "Payment Failed - Order Not Processed",
            "payment-failed",
            data,
        )

    async def send_admin_notification(self, subject: str,
                                      data: Dict[str, Any]) -> bool:
        if not self.admin_emails:
            logger.warning("No admin emails configured; dropping %r", subject)
            return False
        await self.send_mail(
            self.admin_emails,
            f"[ADMIN] {subject}",
            "admin-notification",
            {"title": subject, "data": data},
        )
        return True
