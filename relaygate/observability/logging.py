"""Structured logging bridge for relay lifecycle events and debug request dumps."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

from relaygate.config.settings import settings
from relaygate.util.logger import get_logger, logger


_event_logger = get_logger("events")

# 调试时完整请求内容最大输出长度，避免日志过长
_DEBUG_REQUEST_BODY_MAX_CHARS = 32000
_DEBUG_HEADERS_REDACT = frozenset({"authorization", "x-api-key", "cookie"})


def log_event(event: str, **payload: object) -> None:
    _event_logger.info("event=%s payload=%s", event, payload)


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    headers_safe = {}
    for k, v in headers.items():
        key_lower = k.lower()
        if key_lower in _DEBUG_HEADERS_REDACT or "key" in key_lower or "secret" in key_lower or "token" in key_lower:
            headers_safe[k] = "***"
        else:
            headers_safe[k] = v
    return headers_safe


def log_request_if_debug(method: str, path: str, headers: Mapping[str, str], payload: Any, route: str) -> None:
    """RELAY_LOG_LEVEL=debug 时打请求概要；正文按 log_full_request_body 决定是否打印、分段打印。"""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    try:
        body_str = json.dumps(payload, ensure_ascii=False, indent=2)
    except (TypeError, ValueError):
        body_str = str(payload)
    total_len = len(body_str)
    logger.debug(
        "incoming request method=%s path=%s route=%s headers=%s body_size=%d",
        method,
        path,
        route,
        redact_headers(headers),
        total_len,
    )
    if not settings.log_full_request_body:
        return
    for offset in range(0, total_len, _DEBUG_REQUEST_BODY_MAX_CHARS):
        logger.debug(
            "incoming request body (chars %d-%d of %d):\n%s",
            offset + 1,
            min(offset + _DEBUG_REQUEST_BODY_MAX_CHARS, total_len),
            total_len,
            body_str[offset : offset + _DEBUG_REQUEST_BODY_MAX_CHARS],
        )
