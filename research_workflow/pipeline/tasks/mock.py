"""Mock 任务实现 - 用于空跑管线和测试"""

from __future__ import annotations

import asyncio

from research_workflow.pipeline.context import TaskContext, TaskResult
from research_workflow.pipeline.task_base import Task


class NoOpTask(Task):
    """空任务 - 直接返回成功"""

    async def execute(self, context: TaskContext) -> TaskResult:
        return TaskResult.ok({"task": self.name, "status": "completed"})


class SleepTask(Task):
    """休眠任务 - 模拟耗时操作，config.seconds 控制时长"""

    async def execute(self, context: TaskContext) -> TaskResult:
        seconds = float(self.config.get("seconds", 0.01))
        await asyncio.sleep(seconds)
        return TaskResult.ok({"task": self.name, "slept": seconds})


class FailTask(Task):
    """失败任务 - config.raise 为真时抛出异常，否则返回失败结果"""

    async def execute(self, context: TaskContext) -> TaskResult:
        message = self.config.get("message", f"{self.name} failed")
        if self.config.get("raise", False):
            raise RuntimeError(message)
        return TaskResult.failure(message)
