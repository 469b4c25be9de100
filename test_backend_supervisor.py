"""Backend supervisor against a faked llama-server process and HTTP endpoint."""

import asyncio
import subprocess

import pytest
import requests

from conftest import FakeProcess, FakeResponse
from offline_doctor.core.errors import (
    BackendError,
    BinaryNotFound,
    ModelNotFound,
    NotReady,
    StartupTimeout,
)
from offline_doctor.services import backend_supervisor
from offline_doctor.services.backend_supervisor import (
    BINARY_NAME,
    FALLBACK_REPLY,
    BackendState,
    BackendSupervisor,
    find_backend_binary,
)


@pytest.fixture
def model_file(tmp_path):
    path = tmp_path / "model.gguf"
    path.write_bytes(b"GGUF")
    return path


@pytest.fixture
def spawned(monkeypatch):
    """Records every process the supervisor starts."""
    processes = []

    def fake_popen(args, **kwargs):
        process = FakeProcess(args, **kwargs)
        processes.append(process)
        return process

    monkeypatch.setattr(backend_supervisor.shutil, "which", lambda name: f"/fake/bin/{name}")
    monkeypatch.setattr(backend_supervisor.subprocess, "Popen", fake_popen)
    return processes


@pytest.fixture
def healthy(monkeypatch):
    monkeypatch.setattr(backend_supervisor.requests, "get", lambda url, **kw: FakeResponse(200))


def _supervisor(model_file, **overrides):
    options = dict(health_check_attempts=3, health_check_interval=0, shutdown_grace_period=0.1)
    options.update(overrides)
    return BackendSupervisor(model_file, **options)


def test_binary_search_prefers_path(monkeypatch, tmp_path):
    (tmp_path / BINARY_NAME).write_text("")
    monkeypatch.setattr(backend_supervisor.shutil, "which", lambda name: "/on/path/llama-server")

    assert str(find_backend_binary([tmp_path])) == "/on/path/llama-server"


def test_binary_search_falls_back_to_known_dirs(monkeypatch, tmp_path):
    (tmp_path / BINARY_NAME).write_text("")
    monkeypatch.setattr(backend_supervisor.shutil, "which", lambda name: None)
    monkeypatch.setattr(backend_supervisor, "COMMON_BINARY_DIRS", [tmp_path / "empty", tmp_path])

    assert find_backend_binary() == tmp_path / BINARY_NAME


async def test_generate_before_initialize_is_not_ready(model_file):
    supervisor = _supervisor(model_file)
    with pytest.raises(NotReady):
        await supervisor.generate("hi")


async def test_missing_model_checked_before_spawn(tmp_path, spawned):
    supervisor = _supervisor(tmp_path / "absent.gguf")

    with pytest.raises(ModelNotFound):
        await supervisor.initialize()
    assert spawned == []
    assert supervisor.state is BackendState.UNINITIALIZED


async def test_missing_binary_fails(monkeypatch, model_file):
    monkeypatch.setattr(backend_supervisor.shutil, "which", lambda name: None)
    monkeypatch.setattr(backend_supervisor, "COMMON_BINARY_DIRS", [])

    supervisor = _supervisor(model_file)
    with pytest.raises(BinaryNotFound):
        await supervisor.initialize()
    assert supervisor.state is BackendState.FAILED


async def test_spawn_error_is_backend_error(monkeypatch, model_file):
    def broken_popen(args, **kwargs):
        raise PermissionError("not executable")

    monkeypatch.setattr(backend_supervisor.shutil, "which", lambda name: "/fake/llama-server")
    monkeypatch.setattr(backend_supervisor.subprocess, "Popen", broken_popen)

    supervisor = _supervisor(model_file)
    with pytest.raises(BackendError):
        await supervisor.initialize()
    assert supervisor.state is BackendState.FAILED


async def test_initialize_spawns_with_fixed_arguments(model_file, spawned, healthy):
    supervisor = _supervisor(model_file, port=8181)
    await supervisor.initialize()

    assert supervisor.state is BackendState.READY
    assert supervisor.ready
    (process,) = spawned
    assert process.args == [
        f"/fake/bin/{BINARY_NAME}",
        "-m", str(model_file),
        "--port", "8181",
        "--host", "127.0.0.1",
        "--ctx-size", "4096",
        "--batch-size", "512",
        "--threads", "4",
        "--n-gpu-layers", "0",
    ]
    for stream in ("stdin", "stdout", "stderr"):
        assert process.kwargs[stream] is subprocess.DEVNULL
    assert supervisor.status().pid == process.pid

    await supervisor.shutdown()


async def test_health_retries_until_success(monkeypatch, model_file, spawned):
    calls = []

    def flaky_get(url, **kwargs):
        calls.append(url)
        if len(calls) < 3:
            raise requests.ConnectionError("refused")
        return FakeResponse(200)

    monkeypatch.setattr(backend_supervisor.requests, "get", flaky_get)

    supervisor = _supervisor(model_file, health_check_attempts=5)
    await supervisor.initialize()

    assert supervisor.ready
    assert calls == ["http://127.0.0.1:8080/health"] * 3
    await supervisor.shutdown()


async def test_startup_timeout_terminates_process(monkeypatch, model_file, spawned):
    monkeypatch.setattr(backend_supervisor.requests, "get", lambda url, **kw: FakeResponse(503))

    supervisor = _supervisor(model_file)
    with pytest.raises(StartupTimeout):
        await supervisor.initialize()

    assert supervisor.state is BackendState.FAILED
    assert spawned[0].terminated
    assert supervisor.status().pid is None
    with pytest.raises(NotReady):
        await supervisor.generate("hi")


async def test_shutdown_during_startup_aborts_initialize(monkeypatch, model_file, spawned):
    monkeypatch.setattr(backend_supervisor.requests, "get", lambda url, **kw: FakeResponse(503))

    supervisor = _supervisor(model_file, health_check_attempts=1000, health_check_interval=0.01)
    startup = asyncio.create_task(supervisor.initialize())
    while supervisor.state is not BackendState.POLLING:
        await asyncio.sleep(0.001)

    await supervisor.shutdown()

    with pytest.raises(BackendError, match="shut down during startup"):
        await startup
    assert supervisor.state is BackendState.STOPPED
    assert spawned[0].terminated
    assert supervisor.status().pid is None
    with pytest.raises(NotReady):
        await supervisor.generate("p")


async def test_process_exit_during_startup(monkeypatch, model_file, healthy):
    monkeypatch.setattr(backend_supervisor.shutil, "which", lambda name: "/fake/llama-server")
    monkeypatch.setattr(
        backend_supervisor.subprocess, "Popen", lambda args, **kw: FakeProcess(args, exit_code=1, **kw)
    )

    supervisor = _supervisor(model_file)
    with pytest.raises(BackendError, match="exited"):
        await supervisor.initialize()
    assert supervisor.state is BackendState.FAILED


async def test_initialize_twice_is_rejected(model_file, spawned, healthy):
    supervisor = _supervisor(model_file)
    await supervisor.initialize()

    with pytest.raises(BackendError):
        await supervisor.initialize()
    assert len(spawned) == 1
    await supervisor.shutdown()


async def test_generate_sends_fixed_completion_body(monkeypatch, model_file, spawned, healthy):
    posted = {}

    def fake_post(url, json=None, timeout=None):
        posted.update(url=url, json=json, timeout=timeout)
        return FakeResponse(200, {"content": "  Check ferritin.\n"})

    monkeypatch.setattr(backend_supervisor.requests, "post", fake_post)

    supervisor = _supervisor(model_file, completion_timeout=42)
    await supervisor.initialize()
    reply = await supervisor.generate("Human: anaemia?\nAssistant: ")

    assert reply == "Check ferritin."
    assert posted["url"] == "http://127.0.0.1:8080/completion"
    assert posted["timeout"] == 42
    assert posted["json"] == {
        "prompt": "Human: anaemia?\nAssistant: ",
        "n_predict": 512,
        "temperature": 0.7,
        "top_p": 0.9,
        "top_k": 40,
        "repeat_penalty": 1.1,
        "stop": ["Human:", "User:", "\n\n"],
    }
    await supervisor.shutdown()


@pytest.mark.parametrize("payload", [{}, {"content": None}, {"tokens_predicted": 0}])
async def test_missing_content_degrades_to_apology(monkeypatch, model_file, spawned, healthy, payload):
    monkeypatch.setattr(backend_supervisor.requests, "post", lambda url, **kw: FakeResponse(200, payload))

    supervisor = _supervisor(model_file)
    await supervisor.initialize()

    assert await supervisor.generate("p") == FALLBACK_REPLY
    await supervisor.shutdown()


@pytest.mark.parametrize(
    "response",
    [
        FakeResponse(500, {"error": "boom"}),
        FakeResponse(200, invalid_json=True),
        FakeResponse(200, ["not", "an", "object"]),
        FakeResponse(200, {"content": 12}),
    ],
)
async def test_bad_responses_are_backend_errors(monkeypatch, model_file, spawned, healthy, response):
    monkeypatch.setattr(backend_supervisor.requests, "post", lambda url, **kw: response)

    supervisor = _supervisor(model_file)
    await supervisor.initialize()

    with pytest.raises(BackendError):
        await supervisor.generate("p")
    assert supervisor.ready
    await supervisor.shutdown()


async def test_transport_error_is_backend_error(monkeypatch, model_file, spawned, healthy):
    def timeout_post(url, **kwargs):
        raise requests.Timeout("read timed out")

    monkeypatch.setattr(backend_supervisor.requests, "post", timeout_post)

    supervisor = _supervisor(model_file)
    await supervisor.initialize()
    with pytest.raises(BackendError):
        await supervisor.generate("p")
    await supervisor.shutdown()


async def test_shutdown_is_idempotent(model_file, spawned, healthy):
    supervisor = _supervisor(model_file)
    await supervisor.initialize()

    await supervisor.shutdown()
    await supervisor.shutdown()

    assert spawned[0].terminated
    assert supervisor.state is BackendState.STOPPED
    assert supervisor.status().pid is None
    with pytest.raises(NotReady):
        await supervisor.generate("p")


async def test_shutdown_without_initialize(model_file):
    supervisor = _supervisor(model_file)
    await supervisor.shutdown()
    await supervisor.shutdown()
    assert supervisor.state is BackendState.STOPPED


async def test_can_restart_after_shutdown(model_file, spawned, healthy):
    supervisor = _supervisor(model_file)
    await supervisor.initialize()
    await supervisor.shutdown()
    await supervisor.initialize()

    assert supervisor.ready
    assert len(spawned) == 2
    await supervisor.shutdown()


async def test_context_manager_shuts_down(model_file, spawned, healthy):
    async with _supervisor(model_file) as supervisor:
        assert supervisor.ready

    assert spawned[0].terminated
    assert supervisor.state is BackendState.STOPPED


async def test_unresponsive_process_is_killed(monkeypatch, model_file, spawned, healthy):
    supervisor = _supervisor(model_file)
    await supervisor.initialize()
    process = spawned[0]

    def stubborn_terminate():
        process.terminated = True

    def slow_wait(timeout=None):
        if process.returncode is None:
            raise subprocess.TimeoutExpired(process.args, timeout)
        return process.returncode

    monkeypatch.setattr(process, "terminate", stubborn_terminate)
    monkeypatch.setattr(process, "wait", slow_wait)

    await supervisor.shutdown()
    assert process.killed
