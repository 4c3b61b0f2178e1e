import time
from pathlib import Path
from typing import Callable

import pytest

from planrunner.config import ExecutorConfig, ServiceSettings
from planrunner.documents.builder import build_document
from planrunner.documents.schemas import PromptDocument
from planrunner.runtime import PlanRunner

PLANS_DIR = Path(__file__).parent.parent / "plans"


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def step(number: int, action: dict, description: str = "") -> dict:
    return {"step_number": number, "description": description or f"step {number}", "action": action}


def prompt(number: int, steps: list[dict], dependencies: list[int] | None = None, **extra) -> dict:
    return {
        "number": number,
        "title": extra.pop("title", f"Prompt {number}"),
        "dependencies": dependencies or [],
        "steps": steps,
        **extra,
    }


def document(*prompts: dict, title: str = "Test Plan") -> PromptDocument:
    return build_document({"title": title, "prompts": list(prompts)})


@pytest.fixture
def config(tmp_path: Path) -> ExecutorConfig:
    return ExecutorConfig(
        working_dir=str(tmp_path),
        retry_delay=0,
        max_retries=2,
        step_timeout=10,
        prompt_timeout=30,
    )


@pytest.fixture
def runtime(config: ExecutorConfig):
    runner = PlanRunner(ServiceSettings(executor=config))
    yield runner
    for execution in runner.tracker.list_active():
        runner.executor.cancel_execution(execution.execution_id)
    runner.close()
