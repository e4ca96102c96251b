from research_workflow.pipeline.tasks.mock import FailTask, NoOpTask, SleepTask

__all__ = ["FailTask", "NoOpTask", "SleepTask"]
