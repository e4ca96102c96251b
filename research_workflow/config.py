import logging
import os
from pathlib import Path

VERSION = "v0.3.0"
APP_NAME = "ResearchWorkflow"

# 核心路径
ROOT_PATH = Path(__file__).parent.parent

APPDATA_PATH = Path(os.getenv("WORKFLOW_APPDATA_PATH", str(ROOT_PATH / "AppData")))
LOG_PATH = APPDATA_PATH / "logs"
LOG_FILE = LOG_PATH / "workflow.log"

# 日志配置
LOG_LEVEL = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").upper())
if not isinstance(LOG_LEVEL, int):
    LOG_LEVEL = logging.INFO
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# 为空时只输出到控制台
LOG_TO_FILE = os.getenv("LOG_TO_FILE", "").lower() in ("1", "true", "yes")
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
LOG_BACKUP_COUNT = 3
