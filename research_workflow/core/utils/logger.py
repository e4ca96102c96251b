"""日志工具 - 统一的 logger 构造入口"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

from research_workflow.config import (
    LOG_BACKUP_COUNT,
    LOG_FILE,
    LOG_FORMAT,
    LOG_LEVEL,
    LOG_MAX_BYTES,
    LOG_PATH,
    LOG_TO_FILE,
)

_ROOT_NAME = "research_workflow"


def setup_logger(name: str, level: int = LOG_LEVEL) -> logging.Logger:
    """
    获取带统一格式的 logger

    所有 logger 挂在 ``research_workflow`` 命名空间下，handler 只在根上
    配置一次，子 logger 通过传播输出，避免重复打印。

    Args:
        name: 模块名，例如 "runner"
        level: 日志级别

    Returns:
        配置好的 logger
    """
    root = logging.getLogger(_ROOT_NAME)
    if not root.handlers:
        formatter = logging.Formatter(LOG_FORMAT)

        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)

        if LOG_TO_FILE:
            LOG_PATH.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                LOG_FILE,
                maxBytes=LOG_MAX_BYTES,
                backupCount=LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

        root.setLevel(level)

    logger = logging.getLogger(f"{_ROOT_NAME}.{name}")
    logger.setLevel(level)
    return logger
