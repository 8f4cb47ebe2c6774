"""SMTP delivery of reports with bounded, classified retries."""

from __future__ import annotations

import logging
import random
import smtplib
import ssl
import time
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Callable, Protocol, Sequence

from ..domain.models import Report
from .config import MailConfig, SmtpConfig
from .sanitizer import sanitize_text

_LOG = logging.getLogger(__name__)

USER_AGENT = "periodic-audit"


@dataclass(frozen=True)
class Delivered:
    attempts: int


@dataclass(frozen=True)
class DeliveryFailure:
    reason: str
    attempts: int
    permanent: bool


DeliveryResult = Delivered | DeliveryFailure


class SmtpClient(Protocol):
    """The subset of :class:`smtplib.SMTP` used for delivery."""

    def send_message(
        self, msg: EmailMessage, from_addr: str | None = ..., to_addrs: Sequence[str] | None = ...
    ) -> dict: ...

    def quit(self) -> object: ...

    def close(self) -> None: ...


class PartialDeliveryError(smtplib.SMTPException):
    """The relay accepted the message for only some recipients."""

    def __init__(self, refused: dict[str, tuple[int, bytes]]) -> None:
        self.refused = refused
        names = ", ".join(sorted(refused))
        super().__init__(f"Relay refused recipient(s): {names}")


def open_smtp(config: SmtpConfig) -> smtplib.SMTP:
    """Connect, negotiate TLS and authenticate against the relay."""

    context = ssl.create_default_context()
    if config.implicit_tls:
        client: smtplib.SMTP = smtplib.SMTP_SSL(
            config.host, config.port, timeout=config.timeout, context=context
        )
    else:
        client = smtplib.SMTP(config.host, config.port, timeout=config.timeout)
    try:
        client.ehlo()
        if config.use_tls and not config.implicit_tls:
            client.starttls(context=context)
            client.ehlo()
        if config.username:
            client.login(config.username, config.password or "")
    except BaseException:
        client.close()
        raise
    return client


def is_permanent(exc: BaseException) -> bool:
    """Classify a delivery error; transient errors are worth retrying."""

    if isinstance(exc, (smtplib.SMTPAuthenticationError, smtplib.SMTPNotSupportedError)):
        return True
    if isinstance(exc, PartialDeliveryError):
        # Retrying would duplicate mail for accepted recipients.
        return True
    if isinstance(exc, smtplib.SMTPRecipientsRefused):
        return any(code >= 500 for code, _ in exc.recipients.values())
    if isinstance(exc, smtplib.SMTPResponseException):
        return exc.smtp_code >= 500
    if isinstance(exc, ssl.SSLCertVerificationError):
        return True
    return False


def build_message(report: Report, sender: str) -> EmailMessage:
    message = EmailMessage()
    message["From"] = sender
    message["To"] = ", ".join(report.recipients)
    message["Subject"] = report.subject
    message["Date"] = formatdate(localtime=True)
    message["Message-ID"] = make_msgid(idstring="periodic-audit")
    message["User-Agent"] = USER_AGENT
    message.set_content(report.body)
    return message


class MailDispatcher:
    """Deliver one report to all recipients in a single SMTP transaction."""

    def __init__(
        self,
        config: MailConfig,
        client_factory: Callable[[SmtpConfig], SmtpClient] = open_smtp,
        sleep: Callable[[float], None] = time.sleep,
        jitter: float = 0.5,
    ) -> None:
        if config.smtp is None or not config.sender:
            raise ValueError("MailDispatcher requires smtp settings and a sender.")
        self.config = config
        self.client_factory = client_factory
        self.sleep = sleep
        self.jitter = jitter

    def _backoff(self, attempt: int) -> float:
        delay = self.config.retry_backoff * (2 ** (attempt - 1))
        delay = min(delay, self.config.retry_max_backoff)
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter)
        return delay

    def _attempt(self, message: EmailMessage, recipients: Sequence[str]) -> None:
        client = self.client_factory(self.config.smtp)
        try:
            refused = client.send_message(
                message, from_addr=self.config.sender, to_addrs=list(recipients)
            )
            if refused:
                raise PartialDeliveryError(refused)
            try:
                client.quit()
            except (smtplib.SMTPException, OSError) as exc:
                # The message is already accepted; a retry would duplicate it.
                _LOG.debug("Ignoring error on SMTP QUIT: %s", exc)
        finally:
            client.close()

    def send(self, report: Report) -> DeliveryResult:
        """Send ``report``; never more than ``retry_attempts + 1`` attempts."""

        if not report.recipients:
            return DeliveryFailure("No recipients configured.", attempts=0, permanent=True)

        message = build_message(report, self.config.sender)
        max_attempts = self.config.retry_attempts + 1
        attempt = 0
        while True:
            attempt += 1
            try:
                self._attempt(message, report.recipients)
            except (smtplib.SMTPException, OSError) as exc:
                permanent = is_permanent(exc)
                reason = sanitize_text(f"{type(exc).__name__}: {exc}", 500)
                if permanent or attempt >= max_attempts:
                    _LOG.error(
                        "Mail delivery failed after %d attempt(s) (%s): %s",
                        attempt,
                        "permanent" if permanent else "retries exhausted",
                        reason,
                    )
                    return DeliveryFailure(reason, attempts=attempt, permanent=permanent)
                delay = self._backoff(attempt)
                _LOG.warning(
                    "Mail delivery attempt %d/%d failed: %s; retrying in %.1fs",
                    attempt,
                    max_attempts,
                    reason,
                    delay,
                )
                self.sleep(delay)
                continue
            _LOG.info(
                "Report delivered to %d recipient(s) in %d attempt(s)",
                len(report.recipients),
                attempt,
            )
            return Delivered(attempts=attempt)
