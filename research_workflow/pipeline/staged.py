"""按阶段顺序执行管线 - 阶段之间有隐式屏障"""

from __future__ import annotations

import time
import uuid
from typing import Dict, List, Mapping, Optional, Set

from research_workflow.core.utils.logger import setup_logger
from research_workflow.pipeline.context import TaskContext, TaskResult, TraceEvent
from research_workflow.pipeline.executor import TaskExecutor
from research_workflow.pipeline.graph import InvalidGraphError, TaskDAG
from research_workflow.pipeline.model import Pipeline, PipelineTask
from research_workflow.pipeline.registry import TaskRegistry, get_default_registry, resolve_tasks
from research_workflow.pipeline.runner import RunResult, RunStatus
from research_workflow.pipeline.task_base import Task
from research_workflow.settings import FailurePolicy

logger = setup_logger("staged")


class StagedPipelineRunner:
    """
    阶段执行器

    逐个阶段执行，上一阶段全部结束后才开始下一阶段：
    - parallel=True 的阶段作为一批提交给执行器
    - 其余阶段按声明顺序逐个执行

    依赖只能指向之前的阶段；顺序执行的阶段内还可以指向本阶段中排在前面的任务。
    """

    def __init__(
        self,
        pipeline: Pipeline,
        registry: Optional[TaskRegistry] = None,
        executor: Optional[TaskExecutor] = None,
        tasks: Optional[Mapping[uuid.UUID, Task]] = None,
        failure_policy: Optional[FailurePolicy] = None,
    ):
        """
        Raises:
            CycleDetectedError: 存在循环依赖
            InvalidGraphError: 依赖与阶段顺序矛盾
            TaskTypeNotFoundError: 任务类型未注册
        """
        self.pipeline = pipeline
        self.dag = TaskDAG.from_pipeline(pipeline)
        self._check_stage_order()

        self.registry = registry or get_default_registry()
        self.executor = executor or TaskExecutor()
        self.failure_policy = FailurePolicy(
            failure_policy if failure_policy is not None
            else self.executor.settings.failure_policy
        )
        self._tasks = resolve_tasks(self.dag, self.registry, tasks)

    def _check_stage_order(self) -> None:
        finished: Set[uuid.UUID] = set()
        for stage in self.pipeline.stages:
            visible = set(finished)
            for task in stage.tasks:
                for dep_id in task.dependencies:
                    # 未定义的依赖在运行时按死锁处理
                    if dep_id not in self.dag:
                        continue
                    if dep_id not in visible:
                        dep_name = self.dag.get_task(dep_id).name
                        raise InvalidGraphError(
                            f"阶段 {stage.name!r} 中的任务 {task.name!r} "
                            f"依赖的任务 {dep_name!r} 不会先于它执行"
                        )
                if not stage.parallel:
                    visible.add(task.id)
            finished.update(task.id for task in stage.tasks)

    def _is_blocked(
        self,
        definition: PipelineTask,
        outputs: Dict[uuid.UUID, TaskResult],
        skipped: Set[uuid.UUID],
        remaining: Set[uuid.UUID],
    ) -> Optional[str]:
        """返回不能执行的原因：missing（依赖未定义或无法执行）或 skip（上游失败）"""
        for dep_id in definition.dependencies:
            if dep_id not in self.dag or dep_id in remaining:
                return "missing"
        for dep_id in definition.dependencies:
            if dep_id in skipped:
                return "skip"
            if dep_id in outputs and not outputs[dep_id].success:
                if self.failure_policy == FailurePolicy.SKIP_DEPENDENTS:
                    return "skip"
        return None

    async def run(
        self, context: Optional[TaskContext] = None, raise_on_error: bool = True
    ) -> RunResult:
        """
        执行管线

        Raises:
            DeadlockError: 存在依赖未定义的任务
        """
        context = context or TaskContext()
        outputs: Dict[uuid.UUID, TaskResult] = {}
        skipped: Set[uuid.UUID] = set()
        remaining: Set[uuid.UUID] = set()
        trace: List[TraceEvent] = []
        start_time = time.time()

        logger.info("开始按阶段执行管线: %s", self.pipeline.name)

        for round_no, stage in enumerate(self.pipeline.stages):
            logger.info(
                "执行阶段: stage=%s parallel=%s tasks=%d",
                stage.name,
                stage.parallel,
                len(stage.tasks),
            )
            runnable: List[PipelineTask] = []
            for definition in stage.tasks:
                reason = self._is_blocked(definition, outputs, skipped, remaining)
                if reason == "missing":
                    remaining.add(definition.id)
                    continue
                if reason == "skip":
                    skipped.add(definition.id)
                    trace.append(
                        TraceEvent(
                            task_id=definition.id,
                            task_name=definition.name,
                            status="skipped",
                            round=round_no,
                            error="上游任务失败",
                        )
                    )
                    continue
                if stage.parallel:
                    runnable.append(definition)
                    continue

                # 顺序阶段：逐个执行，后面的任务可以依赖前面的结果
                outputs[definition.id] = await self._execute(definition, context, round_no, trace)

            if runnable:
                started = time.time()
                results = await self.executor.execute_batch(
                    [self._tasks[definition.id] for definition in runnable], context
                )
                elapsed_ms = int((time.time() - started) * 1000)
                for definition, result in zip(runnable, results):
                    outputs[definition.id] = result
                    trace.append(self._trace_event(definition, result, round_no, elapsed_ms))

        if remaining:
            status = RunStatus.DEADLOCK
        elif skipped or any(not r.success for r in outputs.values()):
            status = RunStatus.COMPLETED_WITH_FAILURES
        else:
            status = RunStatus.COMPLETED

        result = RunResult(
            pipeline_id=self.pipeline.id,
            status=status,
            outputs=outputs,
            skipped=skipped,
            remaining=remaining,
            elapsed_ms=int((time.time() - start_time) * 1000),
            trace=trace,
        )
        logger.info(
            "管线执行结束: pipeline=%s status=%s elapsed_ms=%d",
            self.pipeline.name,
            status.value,
            result.elapsed_ms,
        )
        if raise_on_error:
            result.raise_for_status()
        return result

    async def _execute(
        self,
        definition: PipelineTask,
        context: TaskContext,
        round_no: int,
        trace: List[TraceEvent],
    ) -> TaskResult:
        started = time.time()
        result = await self.executor.execute_one(self._tasks[definition.id], context, task_id=definition.id)
        elapsed_ms = int((time.time() - started) * 1000)
        trace.append(self._trace_event(definition, result, round_no, elapsed_ms))
        return result

    @staticmethod
    def _trace_event(
        definition: PipelineTask, result: TaskResult, round_no: int, elapsed_ms: int
    ) -> TraceEvent:
        return TraceEvent(
            task_id=definition.id,
            task_name=definition.name,
            status="completed" if result.success else "failed",
            round=round_no,
            elapsed_ms=elapsed_ms,
            error=result.error,
        )
