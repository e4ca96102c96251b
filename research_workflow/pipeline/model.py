"""管线定义模型 - Pipeline / PipelineStage / PipelineTask

基于 Pydantic v2 实现，支持从 JSON 文档反序列化。
模型构造时不做结构校验，依赖闭包和环检测统一交给 TaskDAG。
"""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Union

from pydantic import BaseModel, ConfigDict, Field


class PipelineModel(BaseModel):
    """所有管线模型的基类，统一配置。

    - extra="forbid": 禁止未声明的字段，防止拼写错误被静默忽略
    - frozen: 管线定义在执行期间只读
    - str_strip_whitespace: 自动去除字符串首尾空白
    """

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        str_strip_whitespace=True,
    )


class PipelineTask(PipelineModel):
    """管线中的单个任务定义"""

    id: uuid.UUID = Field(default_factory=uuid.uuid4, description="任务 ID，管线内唯一")
    name: str = Field(..., description="任务名称")
    task_type: str = Field(..., description="任务类型，用于从注册表创建任务实例")
    config: Any = Field(default_factory=dict, description="任务配置，由具体任务解释")
    dependencies: List[uuid.UUID] = Field(
        default_factory=list, description="必须先完成的任务 ID"
    )

    def with_dependencies(self, dependencies: Iterable[uuid.UUID]) -> "PipelineTask":
        """返回替换了依赖列表的新任务（重复 ID 不做检查）"""
        return self.model_copy(update={"dependencies": list(dependencies)})


class PipelineStage(PipelineModel):
    """管线阶段 - 一组任务的默认分组"""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    name: str
    # 仅作为提示：是否将本阶段任务作为一批并发提交，不改变依赖语义
    parallel: bool = False
    tasks: List[PipelineTask] = Field(default_factory=list)


class Pipeline(PipelineModel):
    """实验管线定义"""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    name: str
    stages: List[PipelineStage] = Field(default_factory=list)

    def iter_tasks(self) -> Iterator[PipelineTask]:
        """按声明顺序遍历所有阶段的任务"""
        for stage in self.stages:
            yield from stage.tasks

    @property
    def task_count(self) -> int:
        return sum(len(stage.tasks) for stage in self.stages)

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> "Pipeline":
        return cls.model_validate_json(text)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "Pipeline":
        """从 JSON 文件加载管线定义"""
        return cls.from_json(Path(path).read_text(encoding="utf-8"))

    def to_json(self, indent: int | None = 2) -> str:
        return self.model_dump_json(indent=indent)


def default_pipeline() -> Pipeline:
    """
    默认实验管线

    数据加载 → 模型推理 → 评估 → 报告，共四个阶段。
    各阶段的任务之间不声明依赖，阶段顺序只作为分组。
    """
    return Pipeline(
        name="Default Experiment Pipeline",
        stages=[
            PipelineStage(
                name="Data Loading",
                parallel=False,
                tasks=[PipelineTask(name="load_dataset", task_type="data_loading")],
            ),
            PipelineStage(
                name="Model Inference",
                parallel=True,
                tasks=[PipelineTask(name="run_inference", task_type="inference")],
            ),
            PipelineStage(
                name="Evaluation",
                parallel=True,
                tasks=[
                    PipelineTask(name="calculate_metrics", task_type="evaluation"),
                    PipelineTask(name="aggregate_results", task_type="aggregation"),
                ],
            ),
            PipelineStage(
                name="Reporting",
                parallel=False,
                tasks=[
                    PipelineTask(name="generate_report", task_type="reporting"),
                    PipelineTask(name="save_results", task_type="storage"),
                ],
            ),
        ],
    )
