# Heat Pump Supervisor
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""E-mail notifications for recovery outcomes."""

import asyncio
import logging
import smtplib
from email.mime.text import MIMEText

logger = logging.getLogger(__name__)


class EmailNotifier:
    """Send plain-text mail over SMTP with STARTTLS.

    Disabled (log only) when no server or recipient is configured. Send
    failures are logged and never raised: a notification must not change
    the outcome of the sequence that sent it.
    """

    def __init__(self, server: str = "", port: int = 587,
                 username: str = "", password: str = "",
                 from_addr: str = "", to_addrs: list[str] | None = None,
                 timeout: float = 30.0):
        self._server = server
        self._port = port
        self._username = username
        self._password = password
        self._from = from_addr or username
        self._to = [a for a in (to_addrs or []) if a]
        self._timeout = timeout
        self._sent = 0
        self._failures = 0
        self._last_error: str | None = None

    @property
    def enabled(self) -> bool:
        return bool(self._server and self._to)

    async def send(self, subject: str, body: str) -> bool:
        if not self.enabled:
            logger.info("Notification (email disabled): %s: %s", subject, body)
            return False
        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, self._send_sync, subject, body)
        except Exception as e:
            self._failures += 1
            self._last_error = str(e)
            logger.error("Failed to send notification %r: %s", subject, e)
            return False
        self._sent += 1
        logger.info("Notification sent: %s", subject)
        return True

    def _send_sync(self, subject: str, body: str):
        msg = MIMEText(body)
        msg["Subject"] = subject
        msg["From"] = self._from
        msg["To"] = ", ".join(self._to)
        with smtplib.SMTP(self._server, self._port, timeout=self._timeout) as server:
            server.starttls()
            if self._username and self._password:
                server.login(self._username, self._password)
            server.send_message(msg)

    def get_status(self) -> dict:
        return {
            "enabled": self.enabled,
            "server": self._server,
            "sent": self._sent,
            "failures": self._failures,
            "last_error": self._last_error,
        }
