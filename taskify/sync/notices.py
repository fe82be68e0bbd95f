"""
User-facing notices — advisory, non-blocking messages about sync outcomes.

The presentation layer decides how to show them; the core only emits.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Deque, List, Optional, Protocol

logger = logging.getLogger("taskify.sync.notices")


class NoticeVariant(str, Enum):
    DEFAULT = "default"
    DESTRUCTIVE = "destructive"


@dataclass(frozen=True)
class Notice:
    title: str
    description: str = ""
    variant: NoticeVariant = NoticeVariant.DEFAULT
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_error(self) -> bool:
        return self.variant == NoticeVariant.DESTRUCTIVE


def info(title: str, description: str = "") -> Notice:
    return Notice(title, description)


def failure(title: str, description: str = "") -> Notice:
    return Notice(title, description, NoticeVariant.DESTRUCTIVE)


class NoticeSink(Protocol):
    def notify(self, notice: Notice) -> None: ...


class LoggingNoticeSink:
    """Default sink: notices go to the ``taskify.sync.notices`` logger."""

    def notify(self, notice: Notice) -> None:
        if notice.is_error:
            logger.warning(f"{notice.title}: {notice.description}")
        else:
            logger.info(f"{notice.title}: {notice.description}")


class NoticeLog:
    """Keeps the most recent notices for a presentation layer to poll."""

    def __init__(self, maxlen: int = 50, forward: Optional[NoticeSink] = None):
        self._notices: Deque[Notice] = deque(maxlen=maxlen)
        self._forward = forward

    def notify(self, notice: Notice) -> None:
        self._notices.append(notice)
        if self._forward is not None:
            self._forward.notify(notice)

    @property
    def notices(self) -> List[Notice]:
        return list(self._notices)

    @property
    def latest(self) -> Optional[Notice]:
        return self._notices[-1] if self._notices else None

    def errors(self) -> List[Notice]:
        return [n for n in self._notices if n.is_error]

    def clear(self) -> None:
        self._notices.clear()

    def __len__(self) -> int:
        return len(self._notices)
