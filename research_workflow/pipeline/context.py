"""任务执行上下文与结果模型"""

from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class TaskContext(BaseModel):
    """传递给每个任务 execute 的只读上下文"""

    model_config = ConfigDict(frozen=True)

    experiment_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    config: Any = Field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        """从 config 中取值，config 不是字典时返回 default"""
        if isinstance(self.config, dict):
            return self.config.get(key, default)
        return default


class TaskResult(BaseModel):
    """单个任务的执行结果，每个被执行的任务恰好产生一个"""

    success: bool
    output: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, output: Any = None) -> "TaskResult":
        return cls(success=True, output=output)

    @classmethod
    def failure(cls, error: str) -> "TaskResult":
        return cls(success=False, output=None, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class TaskProgress(BaseModel):
    """任务进度事件，仅用于观测，不持久化"""

    task_id: uuid.UUID
    task_name: str
    progress: float = Field(..., ge=0.0, le=1.0)
    status: str
    message: Optional[str] = None


class TraceEvent(BaseModel):
    """调度追踪记录"""

    task_id: uuid.UUID
    task_name: str
    status: str  # dispatched | completed | failed | skipped
    round: int = 0
    elapsed_ms: Optional[int] = None
    error: Optional[str] = None
