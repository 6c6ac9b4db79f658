from __future__ import annotations

import logging
from pathlib import Path

from .clients import CallResult

CALL_LOGGER_NAME = "loadsim.calls"
DEFAULT_SLOW_CALL_MS = 1_000.0


def configure_call_log(log_path: Path) -> logging.Logger:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(CALL_LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    handler.setFormatter(formatter)

    close_call_log()
    logger.addHandler(handler)
    return logger


def close_call_log() -> None:
    logger = logging.getLogger(CALL_LOGGER_NAME)
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def format_call(result: CallResult) -> str:
    headline = "FAILED CALL" if result.failed else "SLOW CALL"
    lines = [f"{headline} {result.protocol.value} {result.operation_tag!r}"]

    lines.append(f"  latency_ms: {result.latency_ms:.1f}")
    if result.status is not None:
        lines.append(f"  status: {result.status}")
    if result.error:
        lines.append(f"  error: {result.error}")
    if result.detail:
        detail = result.detail.rstrip()
        lines.append("  detail:")
        lines.extend(f"    {line}" for line in detail.splitlines()[:10])
    if result.tags:
        tags = " ".join(f"{key}={value}" for key, value in sorted(result.tags.items()))
        lines.append(f"  tags: {tags}")

    return "\n".join(lines)


def log_call(result: CallResult, slow_call_ms: float = DEFAULT_SLOW_CALL_MS) -> None:
    logger = logging.getLogger(CALL_LOGGER_NAME)
    if not logger.handlers:
        return
    if result.failed:
        logger.warning(format_call(result))
    elif result.latency_ms > slow_call_ms:
        logger.info(format_call(result))


__all__ = [
    "CALL_LOGGER_NAME",
    "DEFAULT_SLOW_CALL_MS",
    "close_call_log",
    "configure_call_log",
    "format_call",
    "log_call",
]
