"""
引擎配置模块，基于 pydantic-settings 实现。

通过环境变量注入参数值（前缀 PIPELINE_），
使用 lru_cache 保证配置对象在进程生命周期内只实例化一次。
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FailurePolicy(str, Enum):
    """任务失败后对下游任务的处理策略。"""

    SKIP_DEPENDENTS = "skip"      # 失败任务的所有下游任务都不再执行
    RUN_DEPENDENTS = "continue"   # 失败任务也视为已完成，下游照常执行


class EngineSettings(BaseSettings):
    """管线执行引擎配置，环境变量前缀为 PIPELINE_。"""

    model_config = SettingsConfigDict(env_prefix="PIPELINE_", extra="ignore")

    # 同时执行的任务数上限，至少为 1
    max_concurrency: int = Field(default=4, ge=1)
    # 进度事件缓冲区大小，写满后丢弃最旧的事件
    progress_buffer_size: int = Field(default=100, ge=1)
    # 失败传播策略
    failure_policy: FailurePolicy = FailurePolicy.SKIP_DEPENDENTS
    # 单个任务的执行超时（秒），为空表示不限制
    task_timeout: Optional[float] = Field(default=None, gt=0)
    # 等待并发槽位的超时（秒），为空表示一直等待
    acquire_timeout: Optional[float] = Field(default=None, gt=0)
    # 任务失败后的重试次数，0 表示不重试
    max_retries: int = Field(default=0, ge=0)
    # 重试退避基数（秒），第 n 次重试前等待 retry_backoff * 2**n
    retry_backoff: float = Field(default=1.0, ge=0)


@lru_cache
def get_engine_settings() -> EngineSettings:
    return EngineSettings()
