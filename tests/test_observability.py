from __future__ import annotations

from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
import io
import logging
from pathlib import Path
import sys

import pytest

from mergebot import observability
from mergebot.observability import (
    configure_logging,
    current_branch_context,
    log_event,
    log_warning_event,
    logging_branch_context,
)


@pytest.fixture(autouse=True)
def restore_mergebot_logger_state() -> Iterator[None]:
    logger = logging.getLogger("mergebot")
    original_handlers = list(logger.handlers)
    original_level = logger.level
    original_propagate = logger.propagate
    try:
        yield
    finally:
        for handler in logger.handlers:
            if handler not in original_handlers:
                handler.close()
        logger.handlers.clear()
        for handler in original_handlers:
            logger.addHandler(handler)
        logger.setLevel(original_level)
        logger.propagate = original_propagate


def test_quiet_mode_installs_single_null_handler() -> None:
    configure_logging(verbose=None)
    configure_logging(verbose=False)

    logger = logging.getLogger("mergebot")
    assert logger.propagate is False
    assert logger.level > logging.CRITICAL
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)


def test_verbose_mode_logs_to_stderr_with_branch_column() -> None:
    configure_logging(verbose=True)
    configure_logging(verbose="high")

    logger = logging.getLogger("mergebot")
    assert logger.level == logging.INFO
    assert len(logger.handlers) == 1
    handler = logger.handlers[0]
    assert isinstance(handler, logging.StreamHandler)
    assert handler.stream is sys.stderr
    assert handler.formatter is not None
    assert "%(threadName)s" in handler.formatter._fmt
    assert "%(branch_name)s" in handler.formatter._fmt


def test_branch_context_is_applied_to_output(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose="high")
    logger = logging.getLogger("mergebot.tests.branch")

    logger.info("event=outside")
    with logging_branch_context("assets", "/main/AST-001"):
        logger.info("event=inside")
    logger.info("event=after")

    lines = capsys.readouterr().err.splitlines()
    assert "[-] event=outside" in lines[0]
    assert "[/main/AST-001@assets] event=inside" in lines[1]
    assert "[-] event=after" in lines[2]


def test_branch_context_is_isolated_per_thread() -> None:
    def _resolve(branch: str) -> str:
        with logging_branch_context("assets", branch):
            return current_branch_context()

    with ThreadPoolExecutor(max_workers=2) as pool:
        first = pool.submit(_resolve, "/main/AST-1")
        second = pool.submit(_resolve, "/main/AST-2")

    assert first.result() == "/main/AST-1@assets"
    assert second.result() == "/main/AST-2@assets"
    assert current_branch_context() == "-"


def test_low_mode_keeps_lifecycle_events_and_warnings(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose="low")
    logger = logging.getLogger("mergebot.tests.low")

    log_event(logger, "branch_enqueued", branch_id="7")
    log_event(logger, "review_tracked", review_id="31")
    logger.info("plain_message=ignored")
    logger.info("event=")
    log_warning_event(logger, "merge_report_failed", error="boom")

    stderr = capsys.readouterr().err
    assert "event=branch_enqueued branch_id=7" in stderr
    assert "review_tracked" not in stderr
    assert "plain_message=ignored" not in stderr
    assert all(not line.endswith("event=") for line in stderr.splitlines())
    assert "event=merge_report_failed error=boom" in stderr


def test_state_dir_adds_utc_daily_file(tmp_path: Path) -> None:
    configure_logging(verbose="high", state_dir=tmp_path)
    logger = logging.getLogger("mergebot.tests.file")
    with logging_branch_context("assets", "/main/AST-9"):
        log_event(logger, "branch_processing_started", branch_id="9")

    date_key = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    text = (tmp_path / "logs" / f"{date_key}.log").read_text(encoding="utf-8")
    assert "[/main/AST-9@assets] event=branch_processing_started branch_id=9" in text


def test_state_dir_is_ignored_when_quiet(tmp_path: Path) -> None:
    configure_logging(verbose=None, state_dir=tmp_path)
    assert not (tmp_path / "logs").exists()


def test_unknown_mode_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unsupported verbose mode"):
        configure_logging(verbose="noisy")


def test_file_handler_reports_emit_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    handler = observability._UtcDailyFileHandler(base_dir=Path("/tmp"))
    called: dict[str, object] = {}
    monkeypatch.setattr(
        handler,
        "_stream_for_current_date",
        lambda: (_ for _ in ()).throw(RuntimeError("boom")),
    )
    monkeypatch.setattr(handler, "handleError", lambda record: called.setdefault("record", record))

    record = logging.LogRecord(
        name="mergebot.tests.observability",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="event=branch_enqueued",
        args=(),
        exc_info=None,
    )
    handler.emit(record)
    assert "record" in called


def test_log_event_formats_and_normalizes_fields() -> None:
    logger = logging.getLogger("mergebot.tests.format")
    logger.handlers.clear()
    stream = io.StringIO()
    logger.addHandler(logging.StreamHandler(stream))
    logger.setLevel(logging.INFO)
    logger.propagate = False

    log_event(
        logger,
        "merge_finished",
        b=2,
        a="multi\nline value",
        none_value=None,
        bool_value=True,
        empty="   ",
        destinations=("/main", "/main/release"),
        no_destinations=(),
        expr="x=1",
        long_text="x" * 200,
        complex_value={"k": "v"},
    )

    message = stream.getvalue().strip()
    assert message.startswith("event=merge_finished ")
    assert message.index("a=") < message.index("b=")
    assert 'a="multi line value"' in message
    assert "b=2" in message
    assert "none_value=null" in message
    assert "bool_value=true" in message
    assert "empty=<empty>" in message
    assert "destinations=/main,/main/release" in message
    assert "no_destinations=<empty>" in message
    assert 'expr="x=1"' in message
    assert f"long_text={'x' * 160}..." in message
    assert "complex_value=<dict>" in message
    logger.handlers.clear()
