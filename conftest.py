"""Shared fixtures: temp-dir store, settings, and stand-ins for llama-server."""

from pathlib import Path
from typing import List, Optional

import pytest

from offline_doctor.core.config import AppSettings
from offline_doctor.core.errors import NotReady
from offline_doctor.core.schemas import EngineStatus
from offline_doctor.services.app_state import AppState
from offline_doctor.services.conversation_store import ConversationStore
from offline_doctor.services.model_catalog import ModelCatalog


class FakeProcess:
    """Quacks like subprocess.Popen for the supervisor."""

    def __init__(self, args, exit_code: Optional[int] = None, **kwargs) -> None:
        self.args = args
        self.kwargs = kwargs
        self.pid = 4242
        self.returncode = exit_code
        self.terminated = False
        self.killed = False

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def kill(self):
        self.killed = True
        self.returncode = -9

    def wait(self, timeout=None):
        return self.returncode


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, invalid_json: bool = False) -> None:
        self.status_code = status_code
        self._payload = payload
        self._invalid_json = invalid_json

    def json(self):
        if self._invalid_json:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._payload


class StubEngine:
    """Ready backend that echoes; records prompts."""

    def __init__(self, reply: str = "Consider iron-deficiency anaemia.") -> None:
        self.reply = reply
        self.prompts: List[str] = []
        self.ready = True

    async def generate(self, prompt: str) -> str:
        if not self.ready:
            raise NotReady("AI engine not ready")
        self.prompts.append(prompt)
        return self.reply

    async def shutdown(self) -> None:
        self.ready = False

    def status(self) -> EngineStatus:
        return EngineStatus(state="ready" if self.ready else "stopped", ready=self.ready)


@pytest.fixture
def settings(tmp_path: Path) -> AppSettings:
    return AppSettings(
        data_dir=tmp_path / "data",
        health_check_attempts=3,
        health_check_interval=0,
        shutdown_grace_period=0.1,
    )


@pytest.fixture
async def store(tmp_path: Path):
    store = await ConversationStore.open(tmp_path / "test.db")
    yield store
    await store.close()


@pytest.fixture
async def app_state(settings: AppSettings, store: ConversationStore):
    state = AppState(settings, store, ModelCatalog(settings.models_dir))
    yield state
    await state.shutdown_engine()
