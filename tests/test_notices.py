"""Unit tests for taskify.sync.notices — Notice, NoticeLog, LoggingNoticeSink."""

import logging

from taskify.sync.notices import LoggingNoticeSink, NoticeLog, NoticeVariant, failure, info


class TestNotice:
    def test_variants(self):
        assert info("Saved").variant == NoticeVariant.DEFAULT
        assert info("Saved").is_error is False
        assert failure("Oops", "details").is_error is True


class TestNoticeLog:
    def test_keeps_most_recent(self):
        log = NoticeLog(maxlen=2)
        for title in ("a", "b", "c"):
            log.notify(info(title))
        assert [n.title for n in log.notices] == ["b", "c"]
        assert log.latest.title == "c"
        assert len(log) == 2

    def test_errors_and_clear(self):
        log = NoticeLog()
        log.notify(info("ok"))
        log.notify(failure("bad"))
        assert [n.title for n in log.errors()] == ["bad"]
        log.clear()
        assert log.latest is None

    def test_forward(self):
        inner = NoticeLog()
        outer = NoticeLog(forward=inner)
        outer.notify(info("x"))
        assert inner.latest.title == "x"


class TestLoggingNoticeSink:
    def test_levels(self, caplog):
        with caplog.at_level(logging.INFO, logger="taskify.sync.notices"):
            LoggingNoticeSink().notify(info("Task created", "Ship"))
            LoggingNoticeSink().notify(failure("Failed to load tasks", "HTTP 503"))
        levels = [(r.levelname, r.getMessage()) for r in caplog.records]
        assert levels == [
            ("INFO", "Task created: Ship"),
            ("WARNING", "Failed to load tasks: HTTP 503"),
        ]
