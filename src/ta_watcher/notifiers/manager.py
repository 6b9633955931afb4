"""Notification fan-out: a registry of channels behind one reader/writer lock."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from ta_watcher.errors import AllNotifiersFailedError, NotifierError
from ta_watcher.notifiers.base import Notification, NotificationFilter, Notifier

if TYPE_CHECKING:
    from ta_watcher.config import NotifiersConfig

logger = logging.getLogger(__name__)


class _RWLock:
    """Many concurrent readers or one writer. Writers are preferred once waiting."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class NotificationManager:
    """Registry of notifier channels with filtering and partial-failure fan-out.

    ``send`` succeeds as long as at least one enabled channel delivers. When
    every enabled channel fails, or none is enabled, it raises
    :class:`~ta_watcher.errors.AllNotifiersFailedError` naming each failure.
    """

    def __init__(self, notification_filter: NotificationFilter | None = None) -> None:
        self._lock = _RWLock()
        self._notifiers: dict[str, Notifier] = {}
        self._filter = notification_filter or NotificationFilter()

    def add_notifier(self, notifier: Notifier | None) -> None:
        if notifier is None:
            raise ValueError("notifier cannot be None")
        with self._lock.write():
            if notifier.name in self._notifiers:
                raise ValueError(f"notifier {notifier.name!r} already exists")
            self._notifiers[notifier.name] = notifier
        logger.info("added notifier %s", notifier.name)

    def remove_notifier(self, name: str) -> None:
        """Close and unregister the channel *name*. Raises KeyError if absent."""
        with self._lock.write():
            notifier = self._notifiers.pop(name, None)
        if notifier is None:
            raise KeyError(f"notifier {name!r} not found")
        try:
            notifier.close()
        except Exception as exc:
            logger.warning("closing notifier %s failed: %s", name, exc)
        logger.info("removed notifier %s", name)

    def get_notifier(self, name: str) -> Notifier | None:
        with self._lock.read():
            return self._notifiers.get(name)

    def get_notifiers(self) -> dict[str, Notifier]:
        with self._lock.read():
            return dict(self._notifiers)

    def notifier_names(self) -> list[str]:
        with self._lock.read():
            return list(self._notifiers)

    def enabled_count(self) -> int:
        with self._lock.read():
            return sum(1 for n in self._notifiers.values() if n.is_enabled())

    def total_count(self) -> int:
        with self._lock.read():
            return len(self._notifiers)

    def set_filter(self, notification_filter: NotificationFilter | None) -> None:
        with self._lock.write():
            self._filter = notification_filter or NotificationFilter()

    def get_filter(self) -> NotificationFilter:
        with self._lock.read():
            return self._filter

    def send(self, notification: Notification | None) -> bool:
        """Fan *notification* out to every enabled channel.

        Returns:
            True if at least one channel delivered it, False if the filter
            rejected it.

        Raises:
            ValueError:              if *notification* is None.
            AllNotifiersFailedError: if no enabled channel delivered it.
        """
        if notification is None:
            raise ValueError("notification cannot be None")

        with self._lock.read():
            if not self._filter.should_notify(notification):
                logger.debug("notification %s filtered out", notification.id)
                return False
            targets = [n for n in self._notifiers.values() if n.is_enabled()]

            errors: dict[str, BaseException] = {}
            delivered = 0
            for notifier in targets:
                try:
                    notifier.send(notification)
                except Exception as exc:
                    errors[notifier.name] = exc
                    logger.warning("notifier %s failed: %s", notifier.name, exc)
                else:
                    delivered += 1

        if delivered == 0:
            raise AllNotifiersFailedError(errors)
        if errors:
            logger.warning(
                "notification %s delivered to %d of %d notifiers",
                notification.id, delivered, len(targets),
            )
        return True

    def send_to(self, name: str, notification: Notification | None) -> None:
        """Deliver to exactly one channel, bypassing the filter."""
        if notification is None:
            raise ValueError("notification cannot be None")
        with self._lock.read():
            notifier = self._notifiers.get(name)
            if notifier is None:
                raise NotifierError(f"notifier {name!r} not found")
            if not notifier.is_enabled():
                raise NotifierError(f"notifier {name!r} is disabled")
            notifier.send(notification)

    def close(self) -> None:
        """Close every channel and clear the registry.

        Raises:
            NotifierError: listing the channels whose ``close`` failed.
        """
        with self._lock.write():
            notifiers, self._notifiers = self._notifiers, {}
        errors: list[str] = []
        for name, notifier in notifiers.items():
            try:
                notifier.close()
            except Exception as exc:
                errors.append(f"{name}: {exc}")
        if errors:
            raise NotifierError(f"errors closing notifiers: {'; '.join(errors)}")


def build_notification_manager(config: NotifiersConfig) -> NotificationManager:
    """Create a manager with every enabled channel from *config* registered."""
    from ta_watcher.notifiers.email import EmailNotifier  # noqa: PLC0415
    from ta_watcher.notifiers.webhook import FeishuNotifier, WechatNotifier  # noqa: PLC0415

    manager = NotificationManager(
        NotificationFilter.build(
            min_level=config.filter.min_level,
            types=config.filter.types,
            assets=config.filter.assets,
        )
    )
    if config.email.enabled:
        manager.add_notifier(EmailNotifier(config.email))
    if config.feishu.enabled:
        manager.add_notifier(FeishuNotifier(config.feishu))
    if config.wechat.enabled:
        manager.add_notifier(WechatNotifier(config.wechat))
    if not manager.total_count():
        logger.warning("no notifiers enabled; signals will only be logged")
    return manager
