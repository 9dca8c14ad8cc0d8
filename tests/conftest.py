"""Shared fixtures for pipeline engine tests."""

import asyncio

import pytest

from pipeline_engine.observability import clear_trace_context


class FakeSleep:
    """Records backoff delays instead of sleeping."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep the user's ~/.pipeline_engine configuration out of tests."""
    monkeypatch.setenv("PIPELINE_ENGINE_CONFIG", str(tmp_path / "no-config.json"))
    for var in (
        "PIPELINE_ENGINE_MAX_CONCURRENCY",
        "PIPELINE_ENGINE_TASK_TIMEOUT",
        "PIPELINE_ENGINE_CHECKPOINT_DIR",
    ):
        monkeypatch.delenv(var, raising=False)
    yield
    clear_trace_context()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()
