# config.py
# Stage gating policy and every tunable constant of the kernel.
#
# Values come from the environment (optionally a .env file). The store hands
# out snapshots: a run reads the policy once at its start and never sees a
# concurrent settings change half-way through.

import os
import threading
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

SafetyMode = Literal["normal", "strict"]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class StageConfig(BaseModel):
    """Feature-gating policy. Higher stages are strict supersets of lower ones."""

    model_config = {"frozen": True}

    enabled: bool = True
    stage: int = Field(default=7, ge=0, le=7)
    max_plan_steps: int = Field(default=6, ge=1)
    safety_mode: SafetyMode = "normal"

    @classmethod
    def from_env(cls) -> "StageConfig":
        return cls(
            enabled=_env_bool("AGENT_KERNEL_ENABLED", True),
            stage=_env_int("AGENT_KERNEL_STAGE", 7),
            max_plan_steps=_env_int("AGENT_KERNEL_MAX_PLAN_STEPS", 6),
            safety_mode=os.getenv("AGENT_KERNEL_SAFETY_MODE", "normal"),
        )


class ExtractionSettings(BaseModel):
    """Web extraction limits, timeouts (seconds) and render heuristics."""

    max_links: int = Field(default=2, ge=0)
    max_chars_per_link: int = Field(default=6000, ge=1)
    default_max_chars: int = Field(default=30000, ge=1)
    default_timeout: float = Field(default=20.0, gt=0)
    static_timeout: float = Field(default=25.0, gt=0)
    dynamic_host_timeout: float = Field(default=35.0, gt=0)
    min_chars_for_static_success: int = Field(default=300, ge=0)
    default_min_chars_for_static_success: int = Field(default=800, ge=0)
    excerpt_chars: int = Field(default=240, ge=0)
    queue_grace: float = Field(default=1.5, ge=0)
    poll_interval: float = Field(default=0.5, gt=0)
    stable_polls: int = Field(default=3, ge=1)
    min_stable_chars: int = Field(default=300, ge=0)
    user_agent: str = "Mozilla/5.0 (compatible; AgentKernel/0.1) WebContentExtractor/1.0"

    @classmethod
    def from_env(cls) -> "ExtractionSettings":
        defaults = cls()
        return cls(
            max_links=_env_int("AGENT_KERNEL_MAX_LINKS", defaults.max_links),
            max_chars_per_link=_env_int("AGENT_KERNEL_MAX_CHARS_PER_LINK", defaults.max_chars_per_link),
            static_timeout=_env_float("AGENT_KERNEL_STATIC_TIMEOUT", defaults.static_timeout),
            dynamic_host_timeout=_env_float("AGENT_KERNEL_DYNAMIC_TIMEOUT", defaults.dynamic_host_timeout),
            min_chars_for_static_success=_env_int(
                "AGENT_KERNEL_MIN_STATIC_CHARS", defaults.min_chars_for_static_success
            ),
            poll_interval=_env_float("AGENT_KERNEL_POLL_INTERVAL", defaults.poll_interval),
            stable_polls=_env_int("AGENT_KERNEL_STABLE_POLLS", defaults.stable_polls),
        )


class KernelSettings(BaseModel):
    """Everything needed to assemble a kernel and its services."""

    stage: StageConfig = Field(default_factory=StageConfig)
    extraction: ExtractionSettings = Field(default_factory=ExtractionSettings)
    working_memory_cap: int = Field(default=8, ge=1)
    memory_retrieve_limit: int = Field(default=5, ge=0)
    trace_capacity: int = Field(default=200, ge=1)
    display: bool = True
    openrouter_api_key: str | None = None
    model: str = "anthropic/claude-3.5-haiku"

    @classmethod
    def from_env(cls) -> "KernelSettings":
        return cls(
            stage=StageConfig.from_env(),
            extraction=ExtractionSettings.from_env(),
            working_memory_cap=_env_int("AGENT_KERNEL_WORKING_MEMORY_CAP", 8),
            trace_capacity=_env_int("AGENT_KERNEL_TRACE_CAPACITY", 200),
            display=_env_bool("AGENT_KERNEL_DISPLAY", True),
            openrouter_api_key=os.getenv("OPENROUTER_API_KEY"),
            model=os.getenv("AGENT_KERNEL_MODEL", "anthropic/claude-3.5-haiku"),
        )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class StageConfigStore:
    """
    Mutable holder for the current StageConfig.

    The settings surface writes through the setters; the kernel only ever
    calls get() and works on the returned frozen snapshot.
    """

    def __init__(self, initial: StageConfig | None = None) -> None:
        self._lock = threading.Lock()
        self._state = initial or StageConfig()

    def get(self) -> StageConfig:
        with self._lock:
            return self._state

    def _update(self, **changes) -> None:
        with self._lock:
            data = self._state.model_dump()
            data.update(changes)
            self._state = StageConfig.model_validate(data)

    def set_enabled(self, enabled: bool) -> None:
        self._update(enabled=enabled)

    def set_stage(self, stage: int) -> None:
        if not 0 <= stage <= 7:
            raise ValueError(f"Stage must be within 0..7, got {stage}.")
        self._update(stage=stage)

    def set_max_plan_steps(self, steps: int) -> None:
        self._update(max_plan_steps=steps)

    def set_safety_mode(self, mode: SafetyMode) -> None:
        self._update(safety_mode=mode)
