"""Email transport for scheduled reports."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from email.mime.image import MIMEImage
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from pathlib import Path

import aiosmtplib
from jinja2 import Environment, FileSystemLoader

from reportcast.config import Settings

logger = logging.getLogger(__name__)

CHART_CID = "report-chart"
TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"


@dataclass(frozen=True)
class InlineImage:
    content: bytes
    cid: str = CHART_CID
    subtype: str = "png"


@dataclass(frozen=True)
class DeliveryResult:
    sent: bool
    provider_message_id: str | None = None
    error: str | None = None


class EmailTransport(ABC):
    """Sends one message to one recipient."""

    @property
    @abstractmethod
    def relay_host(self) -> str:
        """Host (and port) the transport relays through, checked by the delivery gate."""

    @abstractmethod
    async def send(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        inline_image: InlineImage | None = None,
    ) -> DeliveryResult: ...


class SmtpTransport(EmailTransport):
    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        from_address: str = "reports@localhost",
        timeout: float = 60.0,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._from_address = from_address
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpTransport":
        return cls(
            settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            from_address=settings.smtp_from_address,
            timeout=settings.smtp_timeout_seconds,
        )

    @property
    def relay_host(self) -> str:
        return f"{self._host}:{self._port}"

    def build_message(
        self,
        recipient: str,
        subject: str,
        html_body: str,
        inline_image: InlineImage | None = None,
    ) -> MIMEMultipart:
        msg = MIMEMultipart("related")
        msg["From"] = self._from_address
        msg["To"] = recipient
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=False)
        msg["Message-ID"] = make_msgid()
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        if inline_image is not None:
            image = MIMEImage(inline_image.content, _subtype=inline_image.subtype)
            image.add_header("Content-ID", f"<{inline_image.cid}>")
            image.add_header("Content-Disposition", "inline", filename=f"{inline_image.cid}.{inline_image.subtype}")
            msg.attach(image)
        return msg

    async def send(self, recipient, subject, html_body, inline_image=None):
        msg = self.build_message(recipient, subject, html_body, inline_image)
        try:
            smtp = aiosmtplib.SMTP(
                hostname=self._host,
                port=self._port,
                timeout=self._timeout,
                use_tls=self._port == 465,  # Implicit TLS for port 465
                start_tls=False,
            )
            await smtp.connect()
            if self._port == 587:
                await smtp.starttls()
            if self._username and self._password:
                await smtp.login(self._username, self._password)
            await smtp.send_message(msg)
            await smtp.quit()
        except aiosmtplib.SMTPResponseException as exc:
            logger.warning("delivery: %s rejected by relay: %s %s", recipient, exc.code, exc.message)
            return DeliveryResult(sent=False, error=f"{exc.code} {exc.message}")
        except (aiosmtplib.SMTPException, OSError) as exc:
            logger.warning("delivery: send to %s failed: %s", recipient, exc)
            return DeliveryResult(sent=False, error=str(exc))

        return DeliveryResult(sent=True, provider_message_id=msg["Message-ID"])


def report_subject(report_name: str) -> str:
    return f"Scheduled Report: {report_name}"



def _frequency_label(frequency: str) -> str:
    return frequency.replace("_", "-")


def _format_datetime(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC")


_templates = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=True,
)
_templates.filters["frequency_label"] = _frequency_label
_templates.filters["format_datetime"] = _format_datetime


def render_report_email(
    report_name: str,
    tenant_name: str,
    frequency: str,
    time_of_day: str,
    generated_at: datetime,
) -> str:
    """HTML body referencing the chart image by ``cid:report-chart``."""
    template = _templates.get_template("report_email.html.jinja2")
    return template.render(
        report_name=report_name,
        tenant_name=tenant_name,
        frequency=frequency,
        time_of_day=time_of_day,
        generated_at=generated_at,
        chart_cid=CHART_CID,
    )
