"""Root-level test configuration and shared fixtures.

This conftest.py provides shared fixtures and utilities for all tests.
Module-specific fixtures should be placed in their respective conftest.py files.
"""

import os
import uuid

import pytest

from research_workflow.pipeline.context import TaskContext
from research_workflow.settings import get_engine_settings


# ============================================================================
# Environment isolation
# ============================================================================


@pytest.fixture(autouse=True)
def clean_engine_settings(monkeypatch):
    """Drop PIPELINE_* overrides and the cached settings around every test."""
    for name in list(os.environ):
        if name.startswith("PIPELINE_"):
            monkeypatch.delenv(name, raising=False)
    get_engine_settings.cache_clear()
    yield
    get_engine_settings.cache_clear()


# ============================================================================
# Shared Data Fixtures
# ============================================================================


@pytest.fixture
def experiment_id():
    return uuid.uuid4()


@pytest.fixture
def task_context(experiment_id):
    """Default task context shared by all tasks of a run.

    Returns:
        TaskContext with a small config payload
    """
    return TaskContext(experiment_id=experiment_id, config={"dataset": "unit-test"})
