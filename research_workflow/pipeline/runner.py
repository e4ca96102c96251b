"""管线执行器 - 按依赖关系并发调度任务"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from research_workflow.core.utils.logger import setup_logger
from research_workflow.pipeline.context import TaskContext, TaskResult, TraceEvent
from research_workflow.pipeline.executor import TaskExecutor
from research_workflow.pipeline.graph import CycleDetectedError, TaskDAG
from research_workflow.pipeline.model import Pipeline
from research_workflow.pipeline.registry import TaskRegistry, get_default_registry, resolve_tasks
from research_workflow.pipeline.task_base import Task
from research_workflow.settings import FailurePolicy

logger = setup_logger("runner")


class PipelineExecutionError(Exception):
    """管线执行错误"""

    pass


class DeadlockError(PipelineExecutionError):
    """调度死锁：没有就绪任务也没有执行中的任务，但管线未完成"""

    def __init__(self, remaining: Iterable[uuid.UUID], result: Optional["RunResult"] = None):
        self.remaining = set(remaining)
        self.result = result
        super().__init__(
            f"调度死锁，{len(self.remaining)} 个任务无法就绪: "
            f"{sorted(str(t) for t in self.remaining)}"
        )


class RunStatus(str, Enum):
    """管线运行状态"""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_FAILURES = "completed_with_failures"
    DEADLOCK = "deadlock"
    CYCLE_DETECTED = "cycle_detected"
    CANCELLED = "cancelled"


class CancellationToken:
    """取消令牌：调度循环在每次派发前检查"""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class RunResult:
    """一次管线运行的结果"""

    pipeline_id: Optional[uuid.UUID]
    status: RunStatus
    # 每个已执行任务恰好一条结果
    outputs: Dict[uuid.UUID, TaskResult] = field(default_factory=dict)
    # 因上游失败而未执行的任务
    skipped: Set[uuid.UUID] = field(default_factory=set)
    # 死锁或取消时尚未执行的任务
    remaining: Set[uuid.UUID] = field(default_factory=set)
    error: Optional[str] = None
    elapsed_ms: int = 0
    trace: List[TraceEvent] = field(default_factory=list)

    @property
    def succeeded(self) -> Set[uuid.UUID]:
        return {task_id for task_id, r in self.outputs.items() if r.success}

    @property
    def failed(self) -> Set[uuid.UUID]:
        return {task_id for task_id, r in self.outputs.items() if not r.success}

    def raise_for_status(self) -> None:
        """结构性错误（死锁、循环依赖）时抛出异常"""
        if self.status == RunStatus.DEADLOCK:
            raise DeadlockError(self.remaining, self)
        if self.status == RunStatus.CYCLE_DETECTED:
            raise CycleDetectedError(self.error or "检测到循环依赖")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline_id": str(self.pipeline_id) if self.pipeline_id else None,
            "status": self.status.value,
            "outputs": {str(k): v.to_dict() for k, v in self.outputs.items()},
            "skipped": sorted(str(t) for t in self.skipped),
            "remaining": sorted(str(t) for t in self.remaining),
            "error": self.error,
            "elapsed_ms": self.elapsed_ms,
        }


class PipelineRunner:
    """
    管线执行器

    单个调度循环独占 completed / in_flight / outputs 状态，
    任务在工作协程中执行，通过完成队列回报结果。支持：
    - 并发上限内按依赖关系派发
    - 失败隔离与下游跳过
    - 死锁检测
    - 协作式取消
    - 执行追踪（trace）
    """

    def __init__(
        self,
        dag: TaskDAG,
        registry: Optional[TaskRegistry] = None,
        executor: Optional[TaskExecutor] = None,
        tasks: Optional[Mapping[uuid.UUID, Task]] = None,
        failure_policy: Optional[FailurePolicy] = None,
        pipeline_id: Optional[uuid.UUID] = None,
    ):
        """
        初始化执行器

        Args:
            dag: 任务依赖图
            registry: 任务注册表，默认使用全局注册表
            executor: 任务执行器，默认按配置创建
            tasks: 显式指定的任务实例，优先于注册表
            failure_policy: 失败传播策略，默认取配置
            pipeline_id: 管线 ID，仅用于日志和结果

        Raises:
            TaskTypeNotFoundError: 任务既未显式指定，类型也未注册
        """
        self.dag = dag
        self.registry = registry or get_default_registry()
        self.executor = executor or TaskExecutor()
        self.failure_policy = FailurePolicy(
            failure_policy if failure_policy is not None
            else self.executor.settings.failure_policy
        )
        self.pipeline_id = pipeline_id
        self.status = RunStatus.NOT_STARTED

        self._tasks: Dict[uuid.UUID, Task] = resolve_tasks(dag, self.registry, tasks)

    @classmethod
    def from_pipeline(cls, pipeline: Pipeline, **kwargs: Any) -> "PipelineRunner":
        """
        从 Pipeline 构建执行器

        Raises:
            CycleDetectedError: 存在循环依赖，任何任务都不会执行
        """
        return cls(TaskDAG.from_pipeline(pipeline), pipeline_id=pipeline.id, **kwargs)

    async def run(
        self,
        context: Optional[TaskContext] = None,
        cancel_token: Optional[CancellationToken] = None,
        raise_on_error: bool = True,
    ) -> RunResult:
        """
        执行管线

        Args:
            context: 任务上下文，所有任务共享
            cancel_token: 取消令牌
            raise_on_error: 死锁时是否抛出 DeadlockError

        Returns:
            运行结果

        Raises:
            DeadlockError: 存在永远无法就绪的任务
        """
        context = context or TaskContext()
        self.status = RunStatus.RUNNING
        result = await self._schedule(context, cancel_token)
        self.status = result.status

        if raise_on_error:
            result.raise_for_status()
        return result

    async def _schedule(
        self, context: TaskContext, cancel_token: Optional[CancellationToken]
    ) -> RunResult:
        total = len(self.dag)
        limit = self.executor.max_concurrency
        order = {task_id: i for i, task_id in enumerate(self.dag.task_ids)}

        # 满足依赖的任务集合；RUN_DEPENDENTS 策略下包括失败任务
        completed: Set[uuid.UUID] = set()
        in_flight: Set[uuid.UUID] = set()
        outputs: Dict[uuid.UUID, TaskResult] = {}
        skipped: Set[uuid.UUID] = set()
        trace: List[TraceEvent] = []
        started_at: Dict[uuid.UUID, float] = {}

        channel: "asyncio.Queue[Tuple[uuid.UUID, TaskResult]]" = asyncio.Queue()
        workers: List["asyncio.Task[None]"] = []
        cancelled = False
        round_no = 0
        start_time = time.time()

        logger.info(
            "管线开始执行: pipeline_id=%s tasks=%d max_concurrency=%d",
            self.pipeline_id,
            total,
            limit,
        )

        try:
            while len(outputs) + len(skipped) < total:
                if cancel_token is not None and cancel_token.cancelled and not cancelled:
                    cancelled = True
                    logger.warning(
                        "管线已取消，等待 %d 个执行中的任务结束: pipeline_id=%s",
                        len(in_flight),
                        self.pipeline_id,
                    )

                if not cancelled:
                    ready = (
                        self.dag.get_ready_tasks(completed)
                        - in_flight
                        - set(outputs)
                        - skipped
                    )
                    slots = limit - len(in_flight)
                    for task_id in sorted(ready, key=order.__getitem__)[: max(slots, 0)]:
                        in_flight.add(task_id)
                        started_at[task_id] = time.time()
                        trace.append(
                            TraceEvent(
                                task_id=task_id,
                                task_name=self._tasks[task_id].name,
                                status="dispatched",
                                round=round_no,
                            )
                        )
                        logger.debug("派发任务: task=%s round=%d", self._tasks[task_id].name, round_no)
                        workers.append(
                            asyncio.create_task(self._worker(task_id, context, channel))
                        )

                if not in_flight:
                    break

                task_id, task_result = await channel.get()
                round_no += 1
                in_flight.discard(task_id)
                outputs[task_id] = task_result
                elapsed_ms = int((time.time() - started_at[task_id]) * 1000)
                task_name = self._tasks[task_id].name

                trace.append(
                    TraceEvent(
                        task_id=task_id,
                        task_name=task_name,
                        status="completed" if task_result.success else "failed",
                        round=round_no,
                        elapsed_ms=elapsed_ms,
                        error=task_result.error,
                    )
                )

                if task_result.success:
                    completed.add(task_id)
                    logger.info("任务完成: task=%s elapsed_ms=%d", task_name, elapsed_ms)
                    continue

                logger.error(
                    "任务失败: task=%s elapsed_ms=%d error=%s",
                    task_name,
                    elapsed_ms,
                    task_result.error,
                )
                if self.failure_policy == FailurePolicy.RUN_DEPENDENTS:
                    completed.add(task_id)
                    continue

                newly_skipped = self.dag.get_descendants([task_id]) - set(outputs) - skipped
                for skipped_id in sorted(newly_skipped, key=order.__getitem__):
                    trace.append(
                        TraceEvent(
                            task_id=skipped_id,
                            task_name=self._tasks[skipped_id].name,
                            status="skipped",
                            round=round_no,
                            error=f"上游任务失败: {task_name}",
                        )
                    )
                if newly_skipped:
                    logger.warning(
                        "跳过 %d 个下游任务: failed_task=%s", len(newly_skipped), task_name
                    )
                skipped |= newly_skipped
        finally:
            # 外部取消 run() 时不留下孤儿协程
            pending = [w for w in workers if not w.done()]
            for worker in pending:
                worker.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        remaining = set(self.dag.task_ids) - set(outputs) - skipped
        elapsed_ms = int((time.time() - start_time) * 1000)
        error: Optional[str] = None

        if cancelled:
            status = RunStatus.CANCELLED
            error = "管线已取消"
        elif remaining:
            status = RunStatus.DEADLOCK
            error = str(DeadlockError(remaining))
            logger.error("%s pipeline_id=%s", error, self.pipeline_id)
        elif skipped or any(not r.success for r in outputs.values()):
            status = RunStatus.COMPLETED_WITH_FAILURES
        else:
            status = RunStatus.COMPLETED

        logger.info(
            "管线执行结束: pipeline_id=%s status=%s executed=%d skipped=%d elapsed_ms=%d",
            self.pipeline_id,
            status.value,
            len(outputs),
            len(skipped),
            elapsed_ms,
        )

        return RunResult(
            pipeline_id=self.pipeline_id,
            status=status,
            outputs=outputs,
            skipped=skipped,
            remaining=remaining,
            error=error,
            elapsed_ms=elapsed_ms,
            trace=trace,
        )

    async def _worker(
        self,
        task_id: uuid.UUID,
        context: TaskContext,
        channel: "asyncio.Queue[Tuple[uuid.UUID, TaskResult]]",
    ) -> None:
        task = self._tasks[task_id]
        result = TaskResult.failure("任务未返回结果")
        try:
            result = await self.executor.execute_one(task, context, task_id=task_id)
        except Exception as e:
            logger.exception("执行器内部错误: task=%s", task.name)
            result = TaskResult.failure(str(e) or type(e).__name__)
        finally:
            # 无论如何都要回报，调度循环才不会一直等待
            channel.put_nowait((task_id, result))

    def __repr__(self) -> str:
        return (
            f"PipelineRunner(dag={self.dag!r}, executor={self.executor!r}, "
            f"status={self.status.value})"
        )


async def run_pipeline(
    pipeline: Pipeline,
    context: Optional[TaskContext] = None,
    *,
    registry: Optional[TaskRegistry] = None,
    executor: Optional[TaskExecutor] = None,
    tasks: Optional[Mapping[uuid.UUID, Task]] = None,
    failure_policy: Optional[FailurePolicy] = None,
    cancel_token: Optional[CancellationToken] = None,
    raise_on_error: bool = True,
) -> RunResult:
    """
    构建依赖图并执行整个管线

    raise_on_error 为 False 时，循环依赖和死锁以 RunResult.status 返回，不抛出异常。
    """
    try:
        runner = PipelineRunner.from_pipeline(
            pipeline,
            registry=registry,
            executor=executor,
            tasks=tasks,
            failure_policy=failure_policy,
        )
    except CycleDetectedError as e:
        logger.error("管线存在循环依赖: pipeline_id=%s error=%s", pipeline.id, e)
        if raise_on_error:
            raise
        return RunResult(pipeline_id=pipeline.id, status=RunStatus.CYCLE_DETECTED, error=str(e))

    return await runner.run(context, cancel_token=cancel_token, raise_on_error=raise_on_error)
