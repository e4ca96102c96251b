"""测试任务依赖图"""

import random
import uuid

import pytest

from research_workflow.pipeline.graph import CycleDetectedError, InvalidGraphError, TaskDAG
from research_workflow.pipeline.model import Pipeline, PipelineStage, PipelineTask
from tests.test_pipeline.conftest import create_pipeline


def _task(name, *deps):
    return PipelineTask(name=name, task_type="noop", dependencies=[d.id for d in deps])


def _chain(length):
    """长度为 length 的线性依赖链，T0 <- T1 <- ... """
    tasks = [_task("T0")]
    for i in range(1, length):
        tasks.append(_task(f"T{i}", tasks[-1]))
    return tasks


class TestTopologicalSort:
    """测试拓扑排序"""

    def test_linear_chain(self):
        """简单线性 DAG"""
        a = _task("A")
        b = _task("B", a)
        c = _task("C", b)
        dag = TaskDAG([c, b, a])

        assert dag.topological_sort() == [a.id, b.id, c.id]

    def test_diamond(self, diamond):
        """菱形 DAG"""
        pipeline, (a, b, c, d) = diamond
        dag = TaskDAG.from_pipeline(pipeline)

        assert dag.topological_sort() == [a.id, b.id, c.id, d.id]

    def test_independent_tasks_keep_declaration_order(self):
        """互不依赖的任务按声明顺序排列"""
        tasks = [_task(name) for name in "XYZ"]
        dag = TaskDAG(tasks)

        assert dag.topological_sort() == [t.id for t in tasks]

    def test_every_edge_respected(self):
        """随机 DAG 中每条依赖边都满足先后顺序"""
        rng = random.Random(42)
        tasks = []
        for i in range(30):
            deps = rng.sample(tasks, k=min(len(tasks), rng.randint(0, 3)))
            tasks.append(_task(f"T{i}", *deps))
        rng.shuffle(tasks)

        order = TaskDAG(tasks).topological_sort()
        position = {task_id: i for i, task_id in enumerate(order)}

        assert sorted(order) == sorted(t.id for t in tasks)
        for task in tasks:
            for dep_id in task.dependencies:
                assert position[dep_id] < position[task.id]

    def test_dangling_dependency_still_sorted(self):
        """未定义的依赖不影响排序"""
        a = PipelineTask(name="A", task_type="noop", dependencies=[uuid.uuid4()])
        b = _task("B", a)
        dag = TaskDAG([a, b])

        assert dag.topological_sort() == [a.id, b.id]

    def test_long_chain_declared_in_reverse(self):
        """逆序声明的长依赖链不触发递归深度限制"""
        tasks = _chain(3000)

        dag = TaskDAG(list(reversed(tasks)))

        assert dag.topological_sort() == [t.id for t in tasks]


class TestCycleDetection:
    """测试循环依赖检测"""

    def test_two_node_cycle(self):
        """两节点循环依赖"""
        a = PipelineTask(name="A", task_type="noop")
        b = _task("B", a)
        a = a.with_dependencies([b.id])

        with pytest.raises(CycleDetectedError) as exc_info:
            TaskDAG([a, b])

        assert set(exc_info.value.cycle) == {a.id, b.id}
        assert "A" in str(exc_info.value) and "B" in str(exc_info.value)

    def test_self_loop(self):
        """自环"""
        a = PipelineTask(name="A", task_type="noop")
        a = a.with_dependencies([a.id])

        with pytest.raises(CycleDetectedError) as exc_info:
            TaskDAG([a])

        assert exc_info.value.cycle == [a.id, a.id]

    def test_cycle_across_stages(self):
        """跨阶段的三节点环"""
        a = PipelineTask(name="A", task_type="noop")
        c = _task("C", a)
        b = _task("B", c)
        a = a.with_dependencies([b.id])
        pipeline = Pipeline(
            name="P",
            stages=[
                PipelineStage(name="S1", tasks=[a]),
                PipelineStage(name="S2", tasks=[b, c]),
            ],
        )

        with pytest.raises(CycleDetectedError):
            TaskDAG.from_pipeline(pipeline)

    def test_cycle_at_end_of_long_chain(self):
        """长依赖链末端的环仍能检出，环路径闭合"""
        tasks = _chain(2000)
        head = tasks[0].with_dependencies([tasks[-1].id])
        tasks[0] = head

        with pytest.raises(CycleDetectedError) as exc_info:
            TaskDAG(list(reversed(tasks)))

        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert len(cycle) == 2001


class TestGraphConstruction:
    """测试图的构建"""

    def test_empty_pipeline(self):
        """空管线得到空图"""
        dag = TaskDAG.from_pipeline(Pipeline(name="Empty"))

        assert len(dag) == 0
        assert dag.topological_sort() == []
        assert dag.get_ready_tasks(set()) == set()

    def test_empty_stage(self):
        """空阶段得到空图"""
        pipeline = Pipeline(name="P", stages=[PipelineStage(name="Nothing")])
        assert len(TaskDAG.from_pipeline(pipeline)) == 0

    def test_duplicate_id_rejected(self):
        """任务 ID 重复"""
        a = _task("A")
        again = PipelineTask(id=a.id, name="A2", task_type="noop")

        with pytest.raises(InvalidGraphError):
            TaskDAG([a, again])

    def test_duplicate_dependency_collapses(self):
        """重复依赖按集合处理"""
        a = _task("A")
        b = _task("B", a, a)
        dag = TaskDAG([a, b])

        assert dag.get_dependencies(b.id) == {a.id}
        assert dag.get_dependents(a.id) == [b.id]

    def test_missing_dependencies(self):
        """报告未定义的依赖"""
        ghost = uuid.uuid4()
        a = PipelineTask(name="A", task_type="noop", dependencies=[ghost])
        b = _task("B")
        dag = TaskDAG([a, b])

        assert dag.missing_dependencies() == {a.id: {ghost}}
        assert ghost not in dag


class TestReadyTasks:
    """测试就绪任务查询"""

    def test_initial_ready(self, diamond):
        """初始只有入口任务就绪"""
        pipeline, (a, b, c, d) = diamond
        dag = TaskDAG.from_pipeline(pipeline)

        assert dag.get_ready_tasks(set()) == {a.id}
        assert dag.get_tasks_without_dependencies() == [a.id]

    def test_after_completion(self, diamond):
        """依赖全部完成后才就绪"""
        pipeline, (a, b, c, d) = diamond
        dag = TaskDAG.from_pipeline(pipeline)

        assert dag.get_ready_tasks({a.id}) == {b.id, c.id}
        assert dag.get_ready_tasks({a.id, b.id}) == {c.id}
        assert dag.get_ready_tasks({a.id, b.id, c.id}) == {d.id}
        assert dag.get_ready_tasks({a.id, b.id, c.id, d.id}) == set()

    def test_ready_set_definition(self):
        """就绪集合等于未完成且依赖均已完成的任务"""
        rng = random.Random(7)
        tasks = []
        for i in range(20):
            deps = rng.sample(tasks, k=min(len(tasks), rng.randint(0, 2)))
            tasks.append(_task(f"T{i}", *deps))
        dag = TaskDAG(tasks)

        for _ in range(50):
            completed = {t.id for t in tasks if rng.random() < 0.5}
            expected = {
                t.id
                for t in tasks
                if t.id not in completed and set(t.dependencies) <= completed
            }
            assert dag.get_ready_tasks(completed) == expected

    def test_dangling_dependency_never_ready(self):
        """依赖未定义的任务永远不会就绪"""
        a = PipelineTask(name="A", task_type="noop", dependencies=[uuid.uuid4()])
        b = _task("B")
        dag = TaskDAG([a, b])

        assert dag.get_ready_tasks(set()) == {b.id}
        assert dag.get_ready_tasks({b.id}) == set()


class TestDescendants:
    """测试下游查询"""

    def test_transitive(self, diamond):
        """传递下游"""
        pipeline, (a, b, c, d) = diamond
        dag = TaskDAG.from_pipeline(pipeline)

        assert dag.get_descendants([a.id]) == {b.id, c.id, d.id}
        assert dag.get_descendants([b.id]) == {d.id}
        assert dag.get_descendants([d.id]) == set()

    def test_unrelated_branch_untouched(self):
        """无关分支不受影响"""
        a = _task("A")
        b = _task("B", a)
        c = _task("C")
        dag = TaskDAG.from_pipeline(create_pipeline([a, b, c]))

        assert dag.get_descendants([a.id]) == {b.id}
