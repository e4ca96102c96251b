"""任务执行器 - 在并发上限内执行任务并上报进度"""

from __future__ import annotations

import asyncio
import uuid
from typing import Dict, List, Optional, Sequence, Set

from research_workflow.core.utils.logger import setup_logger
from research_workflow.pipeline.context import TaskContext, TaskProgress, TaskResult
from research_workflow.pipeline.limits import ConcurrencyLimiter, ConcurrencyLimitTimeout
from research_workflow.pipeline.task_base import Task
from research_workflow.settings import EngineSettings, get_engine_settings

logger = setup_logger("executor")

TASK_CANCELLED = "任务已取消"
TASK_ABORTED = "任务被意外取消"


class ProgressStream:
    """
    进度事件流

    有界缓冲，写满时丢弃最旧的事件；发布方永远不会被阻塞。
    """

    def __init__(self, maxsize: int = 100):
        self.maxsize = maxsize
        self._queue: "asyncio.Queue[TaskProgress]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def publish(self, event: TaskProgress) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    async def get(self) -> TaskProgress:
        """等待下一个进度事件"""
        return await self._queue.get()

    def get_nowait(self) -> TaskProgress:
        """立即取出一个事件，无事件时抛出 asyncio.QueueEmpty"""
        return self._queue.get_nowait()

    def drain(self) -> List[TaskProgress]:
        """取出当前缓冲中的全部事件"""
        events: List[TaskProgress] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def empty(self) -> bool:
        return self._queue.empty()

    def __len__(self) -> int:
        return self._queue.qsize()


class TaskExecutor:
    """
    任务执行器

    通过信号量限制同时执行的任务数，支持：
    - 单任务执行（异常隔离，转换为失败结果）
    - 批量执行（结果顺序与输入一致）
    - 进度事件上报
    - 按 ID 取消执行中的任务
    - 失败重试（指数退避）
    """

    def __init__(
        self,
        max_concurrency: Optional[int] = None,
        task_timeout: Optional[float] = None,
        settings: Optional[EngineSettings] = None,
        max_retries: Optional[int] = None,
        retry_backoff: Optional[float] = None,
    ):
        """
        初始化执行器

        Args:
            max_concurrency: 并发上限，默认取配置
            task_timeout: 单任务超时（秒），默认取配置
            settings: 引擎配置，默认使用全局配置
            max_retries: 失败后的重试次数，默认取配置
            retry_backoff: 重试退避基数（秒），默认取配置
        """
        self.settings = settings or get_engine_settings()

        if max_concurrency is None:
            max_concurrency = self.settings.max_concurrency
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency 必须 >= 1，当前为 {max_concurrency}")

        self.task_timeout = (
            task_timeout if task_timeout is not None else self.settings.task_timeout
        )
        self.max_retries = (
            max_retries if max_retries is not None else self.settings.max_retries
        )
        if self.max_retries < 0:
            raise ValueError(f"max_retries 必须 >= 0，当前为 {self.max_retries}")
        self.retry_backoff = (
            retry_backoff if retry_backoff is not None else self.settings.retry_backoff
        )
        self._limiter = ConcurrencyLimiter(
            max_concurrency, "task_executor", timeout=self.settings.acquire_timeout
        )
        self._progress: Optional[ProgressStream] = None
        self._running: Dict[uuid.UUID, "asyncio.Future[TaskResult]"] = {}
        self._cancel_requested: Set[uuid.UUID] = set()

    @property
    def max_concurrency(self) -> int:
        return self._limiter.max_inflight

    @property
    def in_flight(self) -> int:
        """当前正在执行的任务数"""
        return self._limiter.in_flight

    def enable_progress_tracking(self, buffer_size: Optional[int] = None) -> ProgressStream:
        """开启进度上报，返回新的事件流（替换之前的订阅）"""
        self._progress = ProgressStream(buffer_size or self.settings.progress_buffer_size)
        return self._progress

    def disable_progress_tracking(self) -> None:
        self._progress = None

    def _report(
        self,
        task_id: uuid.UUID,
        task_name: str,
        progress: float,
        status: str,
        message: Optional[str] = None,
    ) -> None:
        if self._progress is None:
            return
        self._progress.publish(
            TaskProgress(
                task_id=task_id,
                task_name=task_name,
                progress=progress,
                status=status,
                message=message,
            )
        )

    def cancel_task(self, task_id: uuid.UUID) -> bool:
        """
        取消执行中的任务

        Returns:
            任务是否处于执行中并已发出取消
        """
        running = self._running.get(task_id)
        if running is None or running.done():
            return False
        self._cancel_requested.add(task_id)
        running.cancel()
        logger.info("取消任务: task_id=%s", task_id)
        return True

    async def execute_one(
        self,
        task: Task,
        context: TaskContext,
        task_id: Optional[uuid.UUID] = None,
    ) -> TaskResult:
        """
        执行单个任务

        任务内部的异常不会向外传播，统一转换为失败结果。

        Args:
            task: 任务实例
            context: 任务上下文
            task_id: 用于进度事件和取消的 ID，默认随机生成

        Returns:
            任务结果
        """
        task_id = task_id or uuid.uuid4()
        attempt = 0
        while True:
            result = await self._attempt(task, context, task_id)
            if result.success or result.error == TASK_CANCELLED or attempt >= self.max_retries:
                return result

            delay = self.retry_backoff * (2 ** attempt)
            attempt += 1
            logger.warning(
                "任务失败，%.2fs 后重试 (%d/%d): task=%s error=%s",
                delay,
                attempt,
                self.max_retries,
                task.name,
                result.error,
            )
            self._report(task_id, task.name, 0.0, "retrying", f"第 {attempt} 次重试")
            # 退避期间不占用并发槽位
            await asyncio.sleep(delay)

    async def _attempt(
        self, task: Task, context: TaskContext, task_id: uuid.UUID
    ) -> TaskResult:
        try:
            async with self._limiter.acquire():
                return await self._run(task, context, task_id)
        except ConcurrencyLimitTimeout as e:
            logger.warning("等待并发槽位超时: task=%s", task.name)
            return TaskResult.failure(str(e))

    async def _run(self, task: Task, context: TaskContext, task_id: uuid.UUID) -> TaskResult:
        task_name = task.name
        self._report(task_id, task_name, 0.0, "starting")

        running = asyncio.ensure_future(self._invoke(task, context))
        self._running[task_id] = running
        try:
            result = await running
        except asyncio.CancelledError:
            if task_id in self._cancel_requested:
                self._report(task_id, task_name, 0.0, "cancelled", TASK_CANCELLED)
                return TaskResult.failure(TASK_CANCELLED)
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                # 调用方自身被取消，继续向上传播
                raise
            logger.error("任务自行抛出 CancelledError: task=%s", task_name)
            self._report(task_id, task_name, 0.0, "error", TASK_ABORTED)
            return TaskResult.failure(TASK_ABORTED)
        except Exception as e:
            logger.exception("任务执行异常: task=%s", task_name)
            message = str(e) or type(e).__name__
            self._report(task_id, task_name, 0.0, "error", message)
            return TaskResult.failure(message)
        finally:
            self._running.pop(task_id, None)
            self._cancel_requested.discard(task_id)

        if not isinstance(result, TaskResult):
            message = f"任务返回了无效结果类型: {type(result).__name__}"
            self._report(task_id, task_name, 0.0, "error", message)
            return TaskResult.failure(message)

        self._report(
            task_id,
            task_name,
            1.0,
            "completed" if result.success else "failed",
            result.error,
        )
        return result

    async def _invoke(self, task: Task, context: TaskContext) -> TaskResult:
        if self.task_timeout is None:
            return await task.execute(context)
        try:
            return await asyncio.wait_for(task.execute(context), timeout=self.task_timeout)
        except asyncio.TimeoutError:
            logger.error("任务超时: task=%s timeout=%s", task.name, self.task_timeout)
            return TaskResult.failure(f"任务执行超时 ({self.task_timeout}s)")

    async def execute_batch(
        self, tasks: Sequence[Task], context: TaskContext
    ) -> List[TaskResult]:
        """
        批量执行相互独立的任务

        最多同时执行 max_concurrency 个，槽位释放后补位。

        Returns:
            与输入顺序一致的结果列表
        """
        if not tasks:
            return []
        results = await asyncio.gather(
            *(self.execute_one(task, context) for task in tasks)
        )
        return list(results)

    def __repr__(self) -> str:
        return f"TaskExecutor(max_concurrency={self.max_concurrency})"
