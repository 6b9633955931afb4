"""Chat webhook channels: Feishu (Lark) and WeCom (WeChat Work) bots."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from typing import Any

import requests

from ta_watcher.config import FeishuConfig, WechatConfig
from ta_watcher.errors import NotifierError
from ta_watcher.notifiers.base import Notification, Notifier, render_template

logger = logging.getLogger(__name__)

_TIMEOUT = 10
_DEFAULT_TEXT = "[{level}] {title}\nAsset: {asset}\nStrategy: {strategy}\nTime: {timestamp}\n\n{message}"
_DEFAULT_MARKDOWN = (
    "### {title}\n"
    "> Asset: <font color=\"warning\">{asset}</font>\n"
    "> Level: {level}\n"
    "> Strategy: {strategy}\n"
    "> Time: {timestamp}\n\n"
    "{message}"
)


class _WebhookNotifier(Notifier):
    def __init__(self, webhook_url: str, enabled: bool, session: requests.Session | None = None) -> None:
        self.webhook_url = webhook_url
        self.enabled = enabled
        self._session = session or requests.Session()

    def is_enabled(self) -> bool:
        return self.enabled

    def close(self) -> None:
        self._session.close()

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = self._session.post(self.webhook_url, json=payload, timeout=_TIMEOUT)
        except requests.RequestException as exc:
            raise NotifierError(f"{self.name}: {exc}") from exc
        if resp.status_code != 200:
            raise NotifierError(f"{self.name}: HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as exc:
            raise NotifierError(f"{self.name}: invalid JSON response") from exc


class FeishuNotifier(_WebhookNotifier):
    """Posts a text message to a Feishu custom bot.

    When a signing secret is configured each request carries ``timestamp``
    and ``sign`` (base64 HMAC-SHA256 keyed by ``"{timestamp}\\n{secret}"``).
    """

    name = "feishu"

    def __init__(self, config: FeishuConfig, session: requests.Session | None = None) -> None:
        super().__init__(config.webhook_url, config.enabled, session)
        self.config = config

    def build_payload(self, notification: Notification, timestamp: int | None = None) -> dict[str, Any]:
        text = render_template(self.config.template or _DEFAULT_TEXT, notification)
        payload: dict[str, Any] = {"msg_type": "text", "content": {"text": text}}
        if self.config.secret:
            ts = int(time.time()) if timestamp is None else timestamp
            payload["timestamp"] = str(ts)
            payload["sign"] = feishu_sign(ts, self.config.secret)
        return payload

    def send(self, notification: Notification) -> None:
        if not self.is_enabled():
            return
        body = self._post(self.build_payload(notification))
        code = body.get("code", body.get("StatusCode", 0))
        if code != 0:
            raise NotifierError(f"feishu: code {code}: {body.get('msg', '')}")
        logger.info("feishu message sent for %s", notification.asset or notification.title)


def feishu_sign(timestamp: int, secret: str) -> str:
    key = f"{timestamp}\n{secret}".encode()
    digest = hmac.new(key, b"", digestmod=hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


class WechatNotifier(_WebhookNotifier):
    """Posts a markdown message to a WeCom group bot."""

    name = "wechat"

    def __init__(self, config: WechatConfig, session: requests.Session | None = None) -> None:
        super().__init__(config.webhook_url, config.enabled, session)
        self.config = config

    def build_payload(self, notification: Notification) -> dict[str, Any]:
        content = render_template(self.config.template or _DEFAULT_MARKDOWN, notification)
        return {"msgtype": "markdown", "markdown": {"content": content}}

    def send(self, notification: Notification) -> None:
        if not self.is_enabled():
            return
        body = self._post(self.build_payload(notification))
        if body.get("errcode", 0) != 0:
            raise NotifierError(f"wechat: errcode {body['errcode']}: {body.get('errmsg', '')}")
        logger.info("wechat message sent for %s", notification.asset or notification.title)
