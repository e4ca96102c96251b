"""任务抽象基类"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from research_workflow.pipeline.context import TaskContext, TaskResult


class Task(ABC):
    """可执行任务抽象基类，所有任务必须继承此类"""

    def __init__(self, name: str, config: Any = None):
        """
        初始化任务

        Args:
            name: 任务名称
            config: 任务配置，由子类自行解释
        """
        self.name = name
        self.config = config if config is not None else {}

    @abstractmethod
    async def execute(self, context: TaskContext) -> TaskResult:
        """
        执行任务逻辑

        失败时应返回 success=False 的 TaskResult；抛出的异常会被执行器
        捕获并转换为失败结果。

        Args:
            context: 任务上下文

        Returns:
            任务结果
        """
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"
