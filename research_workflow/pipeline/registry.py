"""任务注册表 - 把管线中的任务定义实例化为可执行任务"""

from __future__ import annotations

import uuid
from typing import Any, Dict, Mapping, Optional, Type

from research_workflow.pipeline.graph import TaskDAG
from research_workflow.pipeline.model import PipelineTask
from research_workflow.pipeline.task_base import Task

# 默认实验管线使用的任务类型，未接入真实实现前全部空跑
DEFAULT_PIPELINE_TASK_TYPES = (
    "data_loading",
    "inference",
    "evaluation",
    "aggregation",
    "reporting",
    "storage",
)


class TaskTypeNotFoundError(Exception):
    """任务定义中的 task_type 没有对应的实现"""

    pass


class TaskRegistry:
    """
    任务注册表

    PipelineTask 只描述任务（类型、名称、配置），注册表负责找到
    task_type 对应的 Task 子类并用定义中的 name / config 构造实例。
    """

    def __init__(self):
        self._task_classes: Dict[str, Type[Task]] = {}

    def register(self, task_type: str, task_class: Type[Task]) -> "TaskRegistry":
        """注册任务类型，同名类型会被覆盖；返回 self 便于链式调用"""
        self._task_classes[task_type] = task_class
        return self

    def create(self, task_type: str, name: str, config: Optional[Any] = None) -> Task:
        """
        按类型名构造任务

        Raises:
            TaskTypeNotFoundError: 类型未注册
        """
        task_class = self._task_classes.get(task_type)
        if task_class is None:
            raise TaskTypeNotFoundError(
                f"任务类型未注册: {task_type}，"
                f"可用类型: {self.get_registered_types()}"
            )
        return task_class(name=name, config=config)

    def create_from(self, definition: PipelineTask) -> Task:
        """
        由管线中的任务定义构造任务

        Raises:
            TaskTypeNotFoundError: definition.task_type 未注册
        """
        try:
            return self.create(definition.task_type, definition.name, definition.config)
        except TaskTypeNotFoundError as e:
            raise TaskTypeNotFoundError(f"任务 {definition.name!r} ({definition.id}): {e}") from e

    def get_registered_types(self) -> list[str]:
        return list(self._task_classes)

    def has_type(self, task_type: str) -> bool:
        return task_type in self._task_classes

    def __contains__(self, task_type: str) -> bool:
        return self.has_type(task_type)

    def __repr__(self) -> str:
        return f"TaskRegistry(types={self.get_registered_types()})"


_default_registry: Optional[TaskRegistry] = None


def get_default_registry() -> TaskRegistry:
    """
    全局默认注册表（单例）

    首次调用时注册 mock 任务：noop / sleep / fail，
    以及默认实验管线的各个任务类型（空跑为 NoOpTask）。
    """
    global _default_registry

    if _default_registry is None:
        _default_registry = TaskRegistry()
        _register_builtin_tasks(_default_registry)

    return _default_registry


def _register_builtin_tasks(registry: TaskRegistry) -> None:
    # 延迟导入避免循环依赖
    from research_workflow.pipeline.tasks.mock import FailTask, NoOpTask, SleepTask

    registry.register("noop", NoOpTask)
    registry.register("sleep", SleepTask)
    registry.register("fail", FailTask)
    for task_type in DEFAULT_PIPELINE_TASK_TYPES:
        registry.register(task_type, NoOpTask)


def resolve_tasks(
    dag: TaskDAG,
    registry: TaskRegistry,
    overrides: Optional[Mapping[uuid.UUID, Task]] = None,
) -> Dict[uuid.UUID, Task]:
    """
    为图中每个任务准备实例：优先使用显式指定的实例，否则由注册表按定义创建

    Raises:
        TaskTypeNotFoundError: 类型未注册
    """
    overrides = overrides or {}
    return {
        task_id: overrides[task_id]
        if task_id in overrides
        else registry.create_from(dag.get_task(task_id))
        for task_id in dag.task_ids
    }
