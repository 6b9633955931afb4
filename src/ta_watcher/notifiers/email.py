"""Email notification channel over SMTP."""

from __future__ import annotations

import html
import logging
import smtplib
from collections.abc import Callable
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from ta_watcher.config import EmailConfig
from ta_watcher.errors import NotifierError
from ta_watcher.notifiers.base import Notification, Notifier, render_template

logger = logging.getLogger(__name__)

_SMTP_TIMEOUT = 30

_TEXT_TEMPLATE = """\
{title}

Asset:    {asset}
Level:    {level}
Strategy: {strategy}
Time:     {timestamp}

{message}

---
TA Watcher
"""

_HTML_TEMPLATE = """\
<html>
  <body style="font-family: Arial, sans-serif;">
    <h2 style="color: #2c3e50;">{title}</h2>
    <table style="border-collapse: collapse; margin: 20px 0;">
      <tr><td style="padding: 8px; font-weight: bold;">Asset:</td><td style="padding: 8px;">{asset}</td></tr>
      <tr><td style="padding: 8px; font-weight: bold;">Level:</td><td style="padding: 8px;">{level}</td></tr>
      <tr><td style="padding: 8px; font-weight: bold;">Strategy:</td><td style="padding: 8px;">{strategy}</td></tr>
      <tr><td style="padding: 8px; font-weight: bold;">Time:</td><td style="padding: 8px;">{timestamp}</td></tr>
    </table>
    <pre style="white-space: pre-wrap;">{message}</pre>
    <hr style="border: none; border-top: 1px solid #ecf0f1; margin: 20px 0;">
    <p style="color: #95a5a6; font-size: 12px;">TA Watcher</p>
  </body>
</html>
"""


class EmailNotifier(Notifier):
    """Sends notifications as multipart (plain + HTML) email.

    ``config.subject`` and ``config.template`` accept ``{field}``
    placeholders for any notification field or ``data`` key.
    """

    name = "email"

    def __init__(
        self,
        config: EmailConfig,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
    ) -> None:
        self.config = config
        self._smtp_factory = smtp_factory

    def is_enabled(self) -> bool:
        return self.config.enabled

    def build_message(self, notification: Notification) -> MIMEMultipart:
        cfg = self.config
        msg = MIMEMultipart("alternative")
        msg["Subject"] = render_template(cfg.subject, notification)
        msg["From"] = cfg.from_addr
        msg["To"] = ", ".join(cfg.to)

        msg.attach(MIMEText(render_template(_TEXT_TEMPLATE, notification), "plain", "utf-8"))
        if cfg.template:
            body = render_template(cfg.template, notification)
        else:
            body = _render_html(notification)
        msg.attach(MIMEText(body, "html", "utf-8"))
        return msg

    def send(self, notification: Notification) -> None:
        if not self.is_enabled():
            return
        cfg = self.config
        msg = self.build_message(notification)
        try:
            with self._smtp_factory(cfg.smtp.host, cfg.smtp.port, timeout=_SMTP_TIMEOUT) as server:
                if cfg.smtp.tls:
                    server.starttls()
                server.login(cfg.smtp.username, cfg.smtp.password)
                server.sendmail(cfg.from_addr, list(cfg.to), msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            raise NotifierError(f"email: SMTP authentication failed for {cfg.smtp.username}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise NotifierError(f"email: {exc}") from exc
        logger.info("email sent to %d recipients for %s", len(cfg.to), notification.asset or notification.title)


def _render_html(notification: Notification) -> str:
    escaped = Notification(
        type=notification.type,
        level=notification.level,
        title=html.escape(notification.title),
        message=html.escape(notification.message),
        asset=html.escape(notification.asset),
        strategy=html.escape(notification.strategy),
        id=notification.id,
        timestamp=notification.timestamp,
    )
    return render_template(_HTML_TEMPLATE, escaped)
