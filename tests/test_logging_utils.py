from __future__ import annotations

import json
import logging
from pathlib import Path

from orthowarp.logging_utils import (
    NOISY_LOGGERS,
    HumanFormatter,
    LogOptions,
    configure_logging,
)


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("orthowarp.test", logging.INFO, __file__, 1, message, (), None)
    record.__dict__.update(extra)
    return record


def test_configure_logging_writes_json(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "orthowarp.jsonl"
    configure_logging(LogOptions(log_file=log_path))
    logger = logging.getLogger("orthowarp.test")
    logger.info("block done", extra={"block": "r0_c512"})
    logging.shutdown()

    lines = log_path.read_text(encoding="utf-8").strip().splitlines()
    assert lines
    payload = json.loads(lines[-1])
    assert payload["message"] == "block done"
    assert payload["level"] == "info"
    assert payload["extra"]["block"] == "r0_c512"
    assert payload["thread"]


def test_human_formatter_prefixes_block() -> None:
    formatter = HumanFormatter("%(levelname)s: %(message)s")
    assert formatter.format(_record("written", block="r0_c0")) == "[block r0_c0] INFO: written"
    assert formatter.format(_record("plain")) == "INFO: plain"


def test_library_loggers_quiet_by_default() -> None:
    configure_logging(LogOptions(verbose=1))
    for name in NOISY_LOGGERS:
        assert logging.getLogger(name).level == logging.WARNING
    configure_logging(LogOptions(verbose=2))
    for name in NOISY_LOGGERS:
        assert logging.getLogger(name).level == logging.DEBUG


def test_quiet_console_level() -> None:
    root = configure_logging(LogOptions(quiet=True))
    assert root.handlers[0].level == logging.WARNING
