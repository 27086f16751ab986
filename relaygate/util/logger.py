"""Project logger: stderr always, rotating file under RELAY_LOG_DIR when enabled."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from relaygate.config.settings import settings


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


def resolve_level(raw: str | None) -> int:
    return _LEVELS.get(str(raw or "INFO").strip().upper(), logging.INFO)


def _rotating_handler(level: int, formatter: logging.Formatter) -> logging.Handler | None:
    log_dir = Path(settings.log_dir)
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_dir / settings.log_file_name,
            maxBytes=max(1024, int(settings.log_max_bytes)),
            backupCount=max(0, int(settings.log_backup_count)),
            encoding="utf-8",
        )
    except OSError:
        # 只读文件系统 / 容器挂载目录无写权限
        return None
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _build_logger() -> logging.Logger:
    root = logging.getLogger("relaygate")
    if root.handlers:
        return root

    level = resolve_level(settings.log_level)
    root.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if settings.log_to_file:
        file_handler = _rotating_handler(level, formatter)
        if file_handler is not None:
            root.addHandler(file_handler)

    root.propagate = False
    return root


logger = _build_logger()


def get_logger(name: str) -> logging.Logger:
    """Child logger, e.g. ``relaygate.events``; shares the root handlers."""

    return logger.getChild(name)
