"""User-facing message sink.

Rendering (toasts, alerts, tray balloons) belongs to the host application;
the services only call :meth:`Notifier.notify`.
"""

from __future__ import annotations

import logging

log = logging.getLogger(__name__)


class Notifier:
    """Base sink.  Subclasses deliver messages to the user."""

    def notify(self, title: str, message: str) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Default sink that writes user messages to the log."""

    def notify(self, title: str, message: str) -> None:
        log.warning("%s: %s", title, message)
