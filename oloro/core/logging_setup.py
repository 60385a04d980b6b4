from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any

from loguru import logger

from oloro.config import Config


_CONFIGURED = False
_PATHS: dict[str, str] = {}


def _normalize_level(level: str | None) -> str:
    raw = (level or "INFO").strip().upper()
    valid = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}
    if raw in valid:
        return raw
    return "INFO"


def mask_secret(secret: str | None, visible: int = 4) -> str:
    """Render a credential as ``...abcd`` so it can appear in logs and UI."""
    text = (secret or "").strip()
    if not text:
        return ""
    return "..." + text[-visible:]


def setup_logging(
    *,
    component: str = "app",
    force: bool = False,
    add_stderr: bool = True,
    log_dir: Path | None = None,
) -> dict[str, str]:
    global _CONFIGURED

    if _CONFIGURED and not force:
        return dict(_PATHS)

    if force:
        logger.remove()

    base = Path(log_dir) if log_dir is not None else Config.DATA_DIR
    pretty_path = base / "latest.log"
    structured_path = base / "latest.structured.jsonl"
    base.mkdir(parents=True, exist_ok=True)

    logger.configure(extra={"component": component, "stage": component})

    fmt = (
        "... {time:HH:mm:ss.SSS} {level:<5} "
        "[{extra[component]:<10}] "
        "[{extra[stage]:<12}] "
        "{message}"
    )

    level_name = _normalize_level(os.getenv("OLORO_LOG_LEVEL", "INFO"))

    if add_stderr:
        logger.add(
            sys.stderr,
            level=level_name,
            format=fmt,
            colorize=False,
            enqueue=False,
            backtrace=False,
            diagnose=False,
        )

    logger.add(
        pretty_path,
        level=level_name,
        format=fmt,
        colorize=False,
        enqueue=False,
        encoding="utf-8",
        mode="w",
        backtrace=False,
        diagnose=False,
    )

    logger.add(
        structured_path,
        level=level_name,
        serialize=True,
        enqueue=False,
        encoding="utf-8",
        mode="w",
        backtrace=False,
        diagnose=False,
    )

    _CONFIGURED = True
    _PATHS.clear()
    _PATHS.update({"pretty": str(pretty_path), "structured": str(structured_path)})
    return dict(_PATHS)


def emit_event(
    bound_logger: Any,
    message: str,
    *,
    level: str = "INFO",
    event: str | None = None,
    stage: str | None = None,
    credential_id: str | None = None,
    record_id: str | None = None,
    outcome: str | None = None,
    duration_ms: int | float | None = None,
    error_category: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    extras: dict[str, Any] = {}
    if event is not None:
        extras["event"] = event
    if stage is not None:
        extras["stage"] = stage
    if credential_id is not None:
        extras["credential_id"] = credential_id
    if record_id is not None:
        extras["record_id"] = record_id
    if outcome is not None:
        extras["outcome"] = outcome
    if duration_ms is not None:
        extras["duration_ms"] = duration_ms
    if error_category is not None:
        extras["error_category"] = error_category
    if meta is not None:
        extras["meta"] = meta

    logger_obj = bound_logger.bind(**extras) if extras else bound_logger
    logger_obj.log(_normalize_level(level), message)
