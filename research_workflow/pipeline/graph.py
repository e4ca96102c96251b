"""DAG 图结构和拓扑排序"""

from __future__ import annotations

import uuid
from collections import deque
from typing import AbstractSet, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from research_workflow.core.utils.logger import setup_logger
from research_workflow.pipeline.model import Pipeline, PipelineTask

logger = setup_logger("graph")


class CycleDetectedError(Exception):
    """循环依赖错误"""

    def __init__(self, message: str, cycle: Optional[List[uuid.UUID]] = None):
        super().__init__(message)
        self.cycle = cycle or []


class InvalidGraphError(Exception):
    """图结构无效错误"""

    pass


class TaskDAG:
    """
    任务依赖图

    由 Pipeline 展开所有阶段的任务构建，只读，支持：
    - 循环依赖检测
    - 拓扑排序
    - 就绪任务查询
    - 前驱/后继任务查询

    依赖中引用了不存在的任务 ID 时不报错，该任务永远不会就绪，
    由调度方作为死锁处理。
    """

    def __init__(self, tasks: Iterable[PipelineTask]):
        """
        从任务列表构建图

        Args:
            tasks: 按声明顺序排列的任务

        Raises:
            InvalidGraphError: 任务 ID 重复
            CycleDetectedError: 存在循环依赖
        """
        # 任务 ID -> 任务定义（保持声明顺序）
        self._tasks: Dict[uuid.UUID, PipelineTask] = {}

        # 依赖表：task -> {依赖的 task}
        self._dependencies: Dict[uuid.UUID, Set[uuid.UUID]] = {}

        for task in tasks:
            if task.id in self._tasks:
                raise InvalidGraphError(f"任务 ID 重复: {task.id} ({task.name})")
            self._tasks[task.id] = task
            self._dependencies[task.id] = set(task.dependencies)

        # 反向邻接表：task -> [依赖它的 task]，只包含图内的边
        self._dependents: Dict[uuid.UUID, List[uuid.UUID]] = {
            task_id: [] for task_id in self._tasks
        }
        for task_id, deps in self._dependencies.items():
            for dep_id in deps:
                if dep_id in self._dependents:
                    self._dependents[dep_id].append(task_id)

        self._detect_cycle()

        missing = self.missing_dependencies()
        if missing:
            logger.warning(
                "存在未定义的依赖，相关任务将无法就绪: %s",
                {str(k): sorted(str(d) for d in v) for k, v in missing.items()},
            )

    @classmethod
    def from_pipeline(cls, pipeline: Pipeline) -> "TaskDAG":
        """从 Pipeline 构建图，空管线或空阶段得到空图"""
        return cls(pipeline.iter_tasks())

    def _detect_cycle(self) -> None:
        """使用 DFS 检测循环依赖（显式栈，长依赖链不受递归深度限制）"""
        # 0: 未访问, 1: 访问中, 2: 已完成
        state: Dict[uuid.UUID, int] = {task_id: 0 for task_id in self._tasks}

        for root in self._tasks:
            if state[root] != 0:
                continue

            state[root] = 1
            path: List[uuid.UUID] = [root]
            stack: List[Tuple[uuid.UUID, Iterator[uuid.UUID]]] = [
                (root, iter(self._dependencies[root]))
            ]

            while stack:
                task_id, deps = stack[-1]
                for dep_id in deps:
                    # 未定义的依赖不是图中的节点
                    if dep_id not in state or state[dep_id] == 2:
                        continue
                    if state[dep_id] == 1:
                        # 找到环，提取环路径
                        cycle = path[path.index(dep_id):] + [dep_id]
                        names = " -> ".join(self._tasks[t].name for t in cycle)
                        raise CycleDetectedError(f"检测到循环依赖: {names}", cycle=cycle)
                    state[dep_id] = 1
                    path.append(dep_id)
                    stack.append((dep_id, iter(self._dependencies[dep_id])))
                    break
                else:
                    state[task_id] = 2
                    path.pop()
                    stack.pop()

    def topological_sort(self) -> List[uuid.UUID]:
        """
        返回拓扑排序后的任务 ID 列表

        互不依赖的任务按声明顺序排列。

        Returns:
            按拓扑顺序排列的任务 ID 列表

        Raises:
            CycleDetectedError: 无法排出全部任务
        """
        # Kahn's algorithm
        in_degree = {
            task_id: sum(1 for dep in deps if dep in self._tasks)
            for task_id, deps in self._dependencies.items()
        }
        queue = deque(task_id for task_id, degree in in_degree.items() if degree == 0)
        result: List[uuid.UUID] = []

        while queue:
            task_id = queue.popleft()
            result.append(task_id)

            for dependent_id in self._dependents[task_id]:
                in_degree[dependent_id] -= 1
                if in_degree[dependent_id] == 0:
                    queue.append(dependent_id)

        # 理论上不会发生，构建时已经检测过
        if len(result) != len(self._tasks):
            raise CycleDetectedError("拓扑排序失败，存在循环依赖")

        return result

    def get_ready_tasks(self, completed: AbstractSet[uuid.UUID]) -> Set[uuid.UUID]:
        """
        获取就绪任务：自身未完成且所有依赖都在 completed 中

        Args:
            completed: 已完成的任务 ID

        Returns:
            就绪任务 ID 集合
        """
        return {
            task_id
            for task_id, deps in self._dependencies.items()
            if task_id not in completed and deps <= completed
        }

    def missing_dependencies(self) -> Dict[uuid.UUID, Set[uuid.UUID]]:
        """返回引用了未定义任务的依赖：task -> {未定义的依赖 ID}"""
        missing: Dict[uuid.UUID, Set[uuid.UUID]] = {}
        for task_id, deps in self._dependencies.items():
            unknown = {dep for dep in deps if dep not in self._tasks}
            if unknown:
                missing[task_id] = unknown
        return missing

    def get_task(self, task_id: uuid.UUID) -> PipelineTask:
        return self._tasks[task_id]

    def get_dependencies(self, task_id: uuid.UUID) -> Set[uuid.UUID]:
        """获取任务声明的依赖（包括未定义的 ID）"""
        return set(self._dependencies[task_id])

    def get_dependents(self, task_id: uuid.UUID) -> List[uuid.UUID]:
        """获取直接依赖该任务的任务"""
        return list(self._dependents[task_id])

    def get_descendants(self, task_ids: Iterable[uuid.UUID]) -> Set[uuid.UUID]:
        """获取传递依赖于给定任务的所有任务（不含给定任务本身）"""
        seen: Set[uuid.UUID] = set()
        queue = deque(task_ids)
        while queue:
            current = queue.popleft()
            for dependent_id in self._dependents.get(current, ()):
                if dependent_id not in seen:
                    seen.add(dependent_id)
                    queue.append(dependent_id)
        return seen

    def get_tasks_without_dependencies(self) -> List[uuid.UUID]:
        """获取没有声明任何依赖的任务（入口任务）"""
        return [task_id for task_id, deps in self._dependencies.items() if not deps]

    @property
    def task_ids(self) -> List[uuid.UUID]:
        """按声明顺序返回所有任务 ID"""
        return list(self._tasks)

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __repr__(self) -> str:
        return (
            f"TaskDAG(tasks={len(self._tasks)}, "
            f"edges={sum(len(v) for v in self._dependents.values())})"
        )
