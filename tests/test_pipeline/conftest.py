"""Pipeline 测试共享 fixtures 与辅助任务"""

import asyncio
from typing import List, Optional, Tuple

import pytest

from research_workflow.pipeline.context import TaskContext, TaskResult
from research_workflow.pipeline.model import Pipeline, PipelineStage, PipelineTask
from research_workflow.pipeline.task_base import Task
from research_workflow.settings import EngineSettings


class ConcurrencyGauge:
    """记录同时执行的任务数"""

    def __init__(self):
        self.current = 0
        self.peak = 0

    def enter(self) -> None:
        self.current += 1
        self.peak = max(self.peak, self.current)

    def leave(self) -> None:
        self.current -= 1


class RecordingTask(Task):
    """记录开始/结束事件的任务，可选延迟和失败"""

    def __init__(
        self,
        name: str,
        config=None,
        log: Optional[List[Tuple[str, str]]] = None,
        gauge: Optional[ConcurrencyGauge] = None,
        delay: float = 0.0,
        succeed: bool = True,
    ):
        super().__init__(name, config)
        self.log = log if log is not None else []
        self.gauge = gauge
        self.delay = delay
        self.succeed = succeed

    async def execute(self, context: TaskContext) -> TaskResult:
        self.log.append(("start", self.name))
        if self.gauge:
            self.gauge.enter()
        try:
            await asyncio.sleep(self.delay)
        finally:
            if self.gauge:
                self.gauge.leave()
        self.log.append(("end", self.name))
        if not self.succeed:
            return TaskResult.failure(f"{self.name} failed")
        return TaskResult.ok({"task": self.name, "experiment_id": str(context.experiment_id)})


class ExplodingTask(Task):
    """执行时抛出异常的任务"""

    async def execute(self, context: TaskContext) -> TaskResult:
        raise ValueError(f"{self.name} exploded")


class SelfCancellingTask(Task):
    """任务体内自行抛出 CancelledError"""

    async def execute(self, context: TaskContext) -> TaskResult:
        raise asyncio.CancelledError()


class FlakyTask(Task):
    """前 failures 次执行失败，之后成功"""

    def __init__(self, name: str, config=None, failures: int = 1, raises: bool = False):
        super().__init__(name, config)
        self.failures = failures
        self.raises = raises
        self.attempts = 0

    async def execute(self, context: TaskContext) -> TaskResult:
        self.attempts += 1
        if self.attempts <= self.failures:
            if self.raises:
                raise ConnectionError(f"{self.name} attempt {self.attempts} failed")
            return TaskResult.failure(f"{self.name} attempt {self.attempts} failed")
        return TaskResult.ok({"task": self.name, "attempts": self.attempts})


class BadResultTask(Task):
    """返回非 TaskResult 的任务"""

    async def execute(self, context: TaskContext):
        return {"not": "a TaskResult"}


@pytest.fixture
def settings():
    """与环境变量无关的默认配置"""
    return EngineSettings()


@pytest.fixture
def event_log():
    return []


@pytest.fixture
def gauge():
    return ConcurrencyGauge()


@pytest.fixture
def diamond():
    """菱形管线：A -> {B, C} -> D"""
    a = PipelineTask(name="A", task_type="noop")
    b = PipelineTask(name="B", task_type="noop").with_dependencies([a.id])
    c = PipelineTask(name="C", task_type="noop").with_dependencies([a.id])
    d = PipelineTask(name="D", task_type="noop").with_dependencies([b.id, c.id])
    return create_pipeline([a, b, c, d], name="Diamond"), (a, b, c, d)


def create_pipeline(tasks: list, name: str = "Test", parallel: bool = False) -> Pipeline:
    """辅助函数：创建单阶段 Pipeline"""
    return Pipeline(
        name=name,
        stages=[PipelineStage(name="Stage", parallel=parallel, tasks=tasks)],
    )


def recording_tasks(pipeline: Pipeline, log, gauge=None, delay: float = 0.0, fail=()):
    """辅助函数：为管线中每个任务创建 RecordingTask，按名称指定失败任务"""
    return {
        task.id: RecordingTask(
            task.name,
            log=log,
            gauge=gauge,
            delay=delay,
            succeed=task.name not in fail,
        )
        for task in pipeline.iter_tasks()
    }


def run(coro):
    """辅助函数：在新的事件循环中执行协程"""
    return asyncio.run(coro)
