"""Configuration for the executor and the HTTP service.

Two layers:
- ExecutorConfig: knobs the Prompt Executor and Step Dispatcher read
  (retry policy, timeouts, concurrency, working directory).
- ServiceSettings: everything the API process needs, loaded from
  PLANRUNNER_* environment variables via `ServiceSettings.from_env()`.

Invalid values fail fast with ValueError at startup rather than at the
first execution.
"""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

# 3 concurrent runs, 10 min per step, 1 hour per prompt, 3 retries 5s apart
DEFAULT_MAX_CONCURRENT = 3
DEFAULT_STEP_TIMEOUT = 10 * 60
DEFAULT_PROMPT_TIMEOUT = 60 * 60
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 5.0
DEFAULT_RECORD_HISTORY = 1000


class ExecutorConfig(BaseModel):
    """Retry, timeout and concurrency policy for prompt execution."""

    max_concurrent: int = Field(
        default=DEFAULT_MAX_CONCURRENT,
        ge=1,
        description="Maximum executions running steps at the same time",
    )
    step_timeout: float = Field(
        default=DEFAULT_STEP_TIMEOUT,
        gt=0,
        description="Seconds a single step attempt may run before it is killed",
    )
    prompt_timeout: float = Field(
        default=DEFAULT_PROMPT_TIMEOUT,
        gt=0,
        description="Seconds a whole prompt may run, retries included",
    )
    auto_retry: bool = True
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    retry_delay: float = Field(
        default=DEFAULT_RETRY_DELAY,
        ge=0,
        description="Fixed delay between attempts of the same step (seconds)",
    )
    working_dir: Optional[str] = Field(
        default=None,
        description="Directory relative step paths and commands resolve against (cwd if unset)",
    )
    tool_command: str = Field(
        default="code",
        description="Executable used by external_tool steps (editor CLI)",
    )
    database_url: str = Field(
        default="",
        description="Default target for database_operation steps: sqlite path or postgres:// URL",
    )
    record_history: int = Field(
        default=DEFAULT_RECORD_HISTORY,
        ge=1,
        description="Finished execution records (and finished sequences) kept for lookup; oldest are dropped first",
    )

    @property
    def working_path(self) -> Path:
        return Path(self.working_dir) if self.working_dir else Path.cwd()


class ServiceSettings(BaseModel):
    """Settings for the API process."""

    api_token: Optional[str] = Field(
        default=None,
        description="Shared token every inbound request must present (auth disabled if unset)",
    )
    documents_dir: Optional[str] = Field(
        default=None,
        description="Directory of *.yaml / *.json plan files loaded at startup",
    )
    callback_urls: list[str] = Field(
        default_factory=list,
        description="Webhook URLs that receive every lifecycle event",
    )
    event_history: int = Field(default=1000, ge=1)
    rescan_interval: float = Field(
        default=0,
        ge=0,
        description="Seconds between scans of documents_dir for new plan files (0 disables)",
    )
    host: str = "0.0.0.0"
    port: int = Field(default=8010, ge=1, le=65535)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)

    @classmethod
    def from_env(cls) -> "ServiceSettings":
        callback_raw = os.getenv("PLANRUNNER_CALLBACK_URLS", "")
        executor = ExecutorConfig(
            max_concurrent=_get_env_int("PLANRUNNER_MAX_CONCURRENT", DEFAULT_MAX_CONCURRENT),
            step_timeout=_get_env_float("PLANRUNNER_STEP_TIMEOUT", DEFAULT_STEP_TIMEOUT),
            prompt_timeout=_get_env_float("PLANRUNNER_PROMPT_TIMEOUT", DEFAULT_PROMPT_TIMEOUT),
            auto_retry=_get_env_bool("PLANRUNNER_AUTO_RETRY", True),
            max_retries=_get_env_int("PLANRUNNER_MAX_RETRIES", DEFAULT_MAX_RETRIES),
            retry_delay=_get_env_float("PLANRUNNER_RETRY_DELAY", DEFAULT_RETRY_DELAY),
            working_dir=os.getenv("PLANRUNNER_WORKING_DIR") or None,
            tool_command=os.getenv("PLANRUNNER_TOOL_COMMAND", "code"),
            database_url=os.getenv("PLANRUNNER_DATABASE_URL", ""),
            record_history=_get_env_int("PLANRUNNER_RECORD_HISTORY", DEFAULT_RECORD_HISTORY),
        )
        return cls(
            api_token=os.getenv("PLANRUNNER_API_TOKEN") or None,
            documents_dir=os.getenv("PLANRUNNER_DOCUMENTS_DIR") or None,
            callback_urls=[u.strip() for u in callback_raw.split(",") if u.strip()],
            event_history=_get_env_int("PLANRUNNER_EVENT_HISTORY", 1000),
            rescan_interval=_get_env_float("PLANRUNNER_RESCAN_INTERVAL", 0),
            host=os.getenv("PLANRUNNER_HOST", "0.0.0.0"),
            port=_get_env_int("PLANRUNNER_PORT", 8010),
            executor=executor,
        )


def _get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw!r}")


def _get_env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got: {raw!r}")


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y", "on")
