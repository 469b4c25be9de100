# offline_doctor/services/backend_supervisor.py
"""Lifecycle of one local llama.cpp `llama-server` process.

    UNINITIALIZED -> STARTING -> POLLING -> READY -> SHUTTING_DOWN -> STOPPED
                         \\          \\
                          +-> FAILED <+

The process handle and the state live behind one asyncio.Lock. `generate`
holds it for the whole completion round trip, so generations are serialized
and a shutdown can never interleave with one.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess
import weakref
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional

import requests
from pydantic import ValidationError

from offline_doctor.core.config import AppSettings
from offline_doctor.core.errors import (
    AssistantError,
    BackendError,
    BinaryNotFound,
    ModelNotFound,
    NotReady,
    StartupTimeout,
)
from offline_doctor.core.schemas import CompletionRequest, CompletionResponse, EngineStatus

logger = logging.getLogger(__name__)

BINARY_NAME = "llama-server.exe" if os.name == "nt" else "llama-server"
COMMON_BINARY_DIRS: List[Path] = [
    Path("/usr/local/bin"),
    Path("/usr/bin"),
    Path("/opt/llama.cpp/bin"),
]

BACKEND_HOST = "127.0.0.1"
CTX_SIZE = 4096
BATCH_SIZE = 512
THREADS = 4
GPU_LAYERS = 0  # CPU only

HEALTH_REQUEST_TIMEOUT = 2.0
FALLBACK_REPLY = "I apologize, but I encountered an error generating a response."


class BackendState(str, Enum):
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    POLLING = "polling"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"
    FAILED = "failed"


_BUSY_STATES = {BackendState.STARTING, BackendState.POLLING, BackendState.READY, BackendState.SHUTTING_DOWN}


def find_backend_binary(extra_dirs: Iterable[Path] = ()) -> Path:
    """Search PATH first, then the well-known install directories."""
    found = shutil.which(BINARY_NAME)
    if found:
        return Path(found)

    for directory in [*COMMON_BINARY_DIRS, *extra_dirs]:
        candidate = Path(directory) / BINARY_NAME
        if candidate.exists():
            return candidate

    raise BinaryNotFound(
        f"llama.cpp binary not found. Please install llama.cpp or ensure '{BINARY_NAME}' is in your PATH."
    )


def _terminate(process: subprocess.Popen, grace_period: float) -> None:
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=grace_period)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


class BackendSupervisor:
    def __init__(
        self,
        model_path: Path,
        *,
        port: int = 8080,
        health_check_attempts: int = 30,
        health_check_interval: float = 1.0,
        completion_timeout: float = 300.0,
        shutdown_grace_period: float = 5.0,
        extra_binary_dirs: Iterable[Path] = (),
    ) -> None:
        self.model_path = Path(model_path)
        self.port = port
        self.health_check_attempts = health_check_attempts
        self.health_check_interval = health_check_interval
        self.completion_timeout = completion_timeout
        self.shutdown_grace_period = shutdown_grace_period
        self.extra_binary_dirs = list(extra_binary_dirs)

        self._lock = asyncio.Lock()
        self._state = BackendState.UNINITIALIZED
        self._process: Optional[subprocess.Popen] = None
        self._finalizer: Optional[weakref.finalize] = None

    @classmethod
    def from_settings(cls, model_path: Path, settings: AppSettings) -> "BackendSupervisor":
        return cls(
            model_path,
            port=settings.backend_port,
            health_check_attempts=settings.health_check_attempts,
            health_check_interval=settings.health_check_interval,
            completion_timeout=settings.completion_timeout,
            shutdown_grace_period=settings.shutdown_grace_period,
            extra_binary_dirs=settings.extra_binary_dirs,
        )

    @property
    def state(self) -> BackendState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state is BackendState.READY

    @property
    def base_url(self) -> str:
        return f"http://{BACKEND_HOST}:{self.port}"

    def command(self, binary: Path) -> List[str]:
        return [
            str(binary),
            "-m", str(self.model_path),
            "--port", str(self.port),
            "--host", BACKEND_HOST,
            "--ctx-size", str(CTX_SIZE),
            "--batch-size", str(BATCH_SIZE),
            "--threads", str(THREADS),
            "--n-gpu-layers", str(GPU_LAYERS),
        ]

    def status(self) -> EngineStatus:
        process = self._process
        return EngineStatus(
            state=self._state.value,
            ready=self.ready,
            model_path=str(self.model_path),
            port=self.port,
            pid=process.pid if process is not None else None,
        )

    async def __aenter__(self) -> "BackendSupervisor":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def initialize(self) -> None:
        if not self.model_path.exists():
            raise ModelNotFound(f"Model file not found at {self.model_path}")

        async with self._lock:
            if self._state in _BUSY_STATES:
                raise BackendError(f"Backend already {self._state.value}")
            self._state = BackendState.STARTING
            try:
                process = self._spawn(find_backend_binary(self.extra_binary_dirs))
            except AssistantError:
                self._state = BackendState.FAILED
                raise
            self._state = BackendState.POLLING

        try:
            await self._wait_for_server(process)
        except AssistantError:
            async with self._lock:
                if self._process is process:
                    await self._release_process()
                    self._state = BackendState.FAILED
            raise

        async with self._lock:
            if self._process is not process:
                raise BackendError("Backend was shut down during startup")
            self._state = BackendState.READY
        logger.info("llama.cpp server ready on %s", self.base_url)

    def _spawn(self, binary: Path) -> subprocess.Popen:
        cmd = self.command(binary)
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            raise BackendError(f"Failed to start llama.cpp server: {e}") from e

        self._process = process
        self._finalizer = weakref.finalize(self, _terminate, process, self.shutdown_grace_period)
        logger.info("Started llama.cpp server pid=%s model=%s", process.pid, self.model_path)
        return process

    async def _health_ok(self) -> bool:
        try:
            response = await asyncio.to_thread(
                requests.get, f"{self.base_url}/health", timeout=HEALTH_REQUEST_TIMEOUT
            )
        except requests.RequestException:
            return False
        return 200 <= response.status_code < 300

    async def _wait_for_server(self, process: subprocess.Popen) -> None:
        for attempt in range(1, self.health_check_attempts + 1):
            await asyncio.sleep(self.health_check_interval)

            if self._process is not process:
                raise BackendError("Backend was shut down during startup")

            code = process.poll()
            if code is not None:
                raise BackendError(f"llama.cpp server exited during startup with code {code}")

            if await self._health_ok():
                return
            logger.debug("Health check %d/%d not ready", attempt, self.health_check_attempts)

        raise StartupTimeout("llama.cpp server failed to start within timeout")

    async def generate(self, prompt: str) -> str:
        async with self._lock:
            if self._state is not BackendState.READY:
                raise NotReady("AI engine not ready")
            return await self._complete(prompt)

    async def _complete(self, prompt: str) -> str:
        body = CompletionRequest(prompt=prompt).model_dump()
        try:
            response = await asyncio.to_thread(
                requests.post,
                f"{self.base_url}/completion",
                json=body,
                timeout=self.completion_timeout,
            )
        except requests.RequestException as e:
            raise BackendError(f"Failed to send request to llama.cpp: {e}") from e

        if not 200 <= response.status_code < 300:
            raise BackendError(f"llama.cpp server returned error: {response.status_code}")

        try:
            parsed = CompletionResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise BackendError(f"Failed to parse response: {e}") from e

        content = parsed.content if parsed.content is not None else FALLBACK_REPLY
        return content.strip()

    async def shutdown(self) -> None:
        async with self._lock:
            if self._process is not None:
                self._state = BackendState.SHUTTING_DOWN
                try:
                    await self._release_process()
                finally:
                    self._state = BackendState.STOPPED
                logger.info("llama.cpp server stopped")
            else:
                self._state = BackendState.STOPPED

    async def _release_process(self) -> None:
        finalizer = self._finalizer
        self._process = None
        self._finalizer = None
        if finalizer is None:
            return
        try:
            await asyncio.to_thread(finalizer)
        except OSError as e:
            raise BackendError(f"Failed to kill llama.cpp process: {e}") from e
