"""Notification model, filter and the abstract notifier channel."""

from __future__ import annotations

import datetime
import re
import uuid
from abc import ABC, abstractmethod
from collections.abc import Collection, Mapping
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Any


class NotificationLevel(IntEnum):
    """Severity, totally ordered: INFO < WARNING < ERROR < CRITICAL."""

    INFO = 0
    WARNING = 1
    ERROR = 2
    CRITICAL = 3

    @classmethod
    def parse(cls, value: str | NotificationLevel) -> NotificationLevel:
        if isinstance(value, cls):
            return value
        key = str(value).strip().upper()
        if key == "WARN":
            key = "WARNING"
        try:
            return cls[key]
        except KeyError:
            raise ValueError(f"unknown notification level: {value!r}") from None

    def __str__(self) -> str:
        return self.name


class NotificationType(Enum):
    PRICE_ALERT = "price_alert"
    STRATEGY_SIGNAL = "strategy_signal"
    SYSTEM_ALERT = "system_alert"
    HEARTBEAT = "heartbeat"

    @classmethod
    def parse(cls, value: str | NotificationType) -> NotificationType:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"unknown notification type: {value!r}") from None

    def __str__(self) -> str:
        return self.value


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass(slots=True, frozen=True)
class Notification:
    """One event to deliver. Immutable; ``data`` is exposed read-only.

    Attributes:
        type:      What kind of event this is.
        level:     Severity used by the filter.
        title:     Short headline.
        message:   Body text.
        asset:     Symbol the event concerns, or ``""`` for system-wide events.
        strategy:  Strategy that produced it, if any.
        data:      Extra key/value pairs available to message templates.
        id:        Unique event id (random when omitted).
        timestamp: Creation time, UTC.
    """

    type: NotificationType
    level: NotificationLevel
    title: str
    message: str
    asset: str = ""
    strategy: str = ""
    data: Mapping[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime.datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    def template_fields(self) -> dict[str, Any]:
        """Flat mapping used to render subject and body templates."""
        fields: dict[str, Any] = dict(self.data)
        fields.update(
            id=self.id,
            type=str(self.type),
            level=str(self.level),
            asset=self.asset,
            strategy=self.strategy,
            title=self.title,
            message=self.message,
            timestamp=self.timestamp.strftime("%Y-%m-%d %H:%M:%S UTC"),
        )
        return fields


@dataclass(slots=True, frozen=True)
class NotificationFilter:
    """Passes a notification iff its level is at least ``min_level`` and its
    type and asset are allowed. Empty allow-lists allow everything, and an
    empty asset always passes the asset check.
    """

    min_level: NotificationLevel = NotificationLevel.INFO
    types: frozenset[NotificationType] = frozenset()
    assets: frozenset[str] = frozenset()

    @classmethod
    def build(
        cls,
        min_level: str | NotificationLevel = NotificationLevel.INFO,
        types: Collection[str | NotificationType] = (),
        assets: Collection[str] = (),
    ) -> NotificationFilter:
        return cls(
            min_level=NotificationLevel.parse(min_level),
            types=frozenset(NotificationType.parse(t) for t in types),
            assets=frozenset(a.upper() for a in assets),
        )

    def should_notify(self, notification: Notification) -> bool:
        if notification.level < self.min_level:
            return False
        if self.types and notification.type not in self.types:
            return False
        if self.assets and notification.asset and notification.asset.upper() not in self.assets:
            return False
        return True


class Notifier(ABC):
    """Base class every notification channel must implement.

    ``send`` is blocking and may be called from several threads at once.
    """

    #: Unique channel name within a :class:`NotificationManager`.
    name: str = ""

    @abstractmethod
    def send(self, notification: Notification) -> None:
        """Deliver *notification*.

        Raises:
            NotifierError: if delivery failed.
        """

    @abstractmethod
    def is_enabled(self) -> bool:
        """Return False to have the manager skip this channel."""

    def close(self) -> None:
        """Release resources. Default is a no-op."""


_GO_FIELD_RE = re.compile(r"\{\{\s*\.(\w+)\s*\}\}")
_FIELD_RE = re.compile(r"\{(\w+)\}")


def render_template(template: str, notification: Notification) -> str:
    """Substitute ``{field}`` (or legacy ``{{.Field}}``) placeholders.

    Unknown placeholders and any other braces are left untouched, so HTML
    templates with inline CSS render safely.
    """
    fields = notification.template_fields()

    def _sub(match: re.Match[str]) -> str:
        value = fields.get(match.group(1).lower())
        return match.group(0) if value is None else str(value)

    text = _GO_FIELD_RE.sub(lambda m: "{" + m.group(1).lower() + "}", template)
    return _FIELD_RE.sub(_sub, text)
