from __future__ import annotations

import asyncio
import atexit
import contextlib
import subprocess
import weakref
from pathlib import Path
from typing import Callable, Optional

from llama_cpp_server.entities.server import SupervisorStatus
from llama_cpp_server.entities.workload import ReadinessState
from llama_cpp_server.frameworks_drivers.config import SupervisorConfig, SupervisorSettings
from llama_cpp_server.frameworks_drivers.port_allocator import PortAllocator
from llama_cpp_server.frameworks_drivers.process_launcher import ProcessLauncher
from llama_cpp_server.frameworks_drivers.readiness_prober import ReadinessProber
from llama_cpp_server.shared.error_utils import ErrorUtils
from llama_cpp_server.shared.errors import (
    ProcessCrashed,
    RestartLimitExceeded,
    SpawnFailure,
    SupervisorError,
    SupervisorNotReady,
    SupervisorTerminated,
)
from llama_cpp_server.shared.health_checker import HealthChecker
from llama_cpp_server.shared.logger import Logger

logger = Logger.get(__name__)

TerminationCallback = Callable[[Optional[SupervisorError]], None]

_live_supervisors: "weakref.WeakSet[LlamaCppSupervisor]" = weakref.WeakSet()


@atexit.register
def _reap_all() -> None:
    for supervisor in list(_live_supervisors):
        supervisor.close()


def api_endpoint(host: str, port: int) -> str:
    if host in ("", "0.0.0.0"):
        host = "127.0.0.1"
    return f"http://{host}:{port}"


class LlamaCppSupervisor:
    """
    Owns one llama-server process end to end: port allocation, launch,
    readiness probing, crash monitoring with bounded restarts, and teardown.

    State machine:
        not_started -> starting -> probing -> ready <-> restarting -> probing
    Any state may move to terminated, which is absorbing.

    The supervisor is the only component that touches its process. Callers
    interact through start(), port(), stop() and the liveness accessors.
    """

    def __init__(
        self,
        name: str,
        config: SupervisorConfig,
        settings: SupervisorSettings | None = None,
        port_allocator: PortAllocator | None = None,
        launcher: ProcessLauncher | None = None,
        prober: ReadinessProber | None = None,
    ):
        self.name = name
        self.config = config
        self.settings = settings or SupervisorSettings()
        self.port_allocator = port_allocator or PortAllocator(self.settings.host, self.settings.port_attempts)
        self.launcher = launcher or ProcessLauncher(self.settings)
        self.prober = prober or ReadinessProber.from_settings(self.settings)

        self._state = ReadinessState.NOT_STARTED
        self._process: subprocess.Popen | None = None
        self._port: int | None = None
        self._log_path: Path | None = None
        self._restarts = 0
        self._failure: SupervisorError | None = None
        self._pending: asyncio.Task | None = None
        self._monitor_task: asyncio.Task | None = None
        self._terminated = asyncio.Event()
        self._callbacks: list[TerminationCallback] = []
        _live_supervisors.add(self)

    @property
    def state(self) -> ReadinessState:
        return self._state

    @property
    def restarts(self) -> int:
        return self._restarts

    @property
    def failure(self) -> SupervisorError | None:
        return self._failure

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def is_available(self) -> bool:
        return self._state is not ReadinessState.TERMINATED

    def port(self) -> int:
        """Port of the ready server. Raises SupervisorNotReady in any other state."""
        if self._state is not ReadinessState.READY or self._port is None:
            raise SupervisorNotReady(f"llama-server <{self.name}> is {self._state.value}")
        return self._port

    @property
    def endpoint(self) -> str:
        return api_endpoint(self.settings.host, self.port())

    def status(self) -> SupervisorStatus:
        return SupervisorStatus(
            name=self.name,
            kind=self.config.kind,
            state=self._state,
            port=self._port,
            pid=self.pid,
            restarts=self._restarts,
            failure=ErrorUtils.describe(self._failure),
        )

    def add_termination_callback(self, callback: TerminationCallback) -> None:
        """Register a callback invoked once with the failure (None after a clean stop)."""
        self._callbacks.append(callback)

    async def wait_terminated(self) -> SupervisorError | None:
        await self._terminated.wait()
        return self._failure

    async def start(self) -> None:
        """
        Bring the server to the ready state.

        Idempotent: returns at once when ready, and joins the in-flight
        bring-up or restart instead of spawning a second process.

        Raises:
            PortExhausted, SpawnFailure, ReadinessTimeout: The initial start failed.
            RestartLimitExceeded: The server crashed too often.
            SupervisorTerminated: The supervisor was stopped.
        """
        if self._state is ReadinessState.READY:
            return
        if self._state is ReadinessState.TERMINATED:
            raise self._failure or SupervisorTerminated(f"llama-server <{self.name}> was stopped")

        if self._pending is None:
            self._pending = asyncio.ensure_future(self._bring_up())
        pending = self._pending
        try:
            await asyncio.shield(pending)
        except asyncio.CancelledError:
            if pending.cancelled() and self._state is ReadinessState.TERMINATED:
                raise SupervisorTerminated(f"llama-server <{self.name}> was stopped while starting") from None
            raise

    async def stop(self) -> None:
        """Terminate and reap the child, and move to the terminated state. Idempotent."""
        if self._state is not ReadinessState.TERMINATED:
            logger.info(f"Stopping llama-server <{self.name}>")
        self._state = ReadinessState.TERMINATED

        current = asyncio.current_task()
        tasks = [
            task for task in (self._pending, self._monitor_task)
            if task is not None and task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pending = None
        self._monitor_task = None

        await self._release_process()
        self._notify()

    def close(self) -> None:
        """
        Synchronous teardown for interpreter exit and garbage collection.
        Blocks until the child is reaped.
        """
        self._state = ReadinessState.TERMINATED
        for task in (self._pending, self._monitor_task):
            if task is not None and not task.done():
                # the owning loop may already be closed
                with contextlib.suppress(RuntimeError):
                    task.cancel()

        process, self._process = self._process, None
        port, self._port = self._port, None
        try:
            if process is not None:
                logger.info(f"Reaping llama-server <{self.name}> (pid {process.pid})")
                self.launcher.terminate(process, self.settings.terminate_timeout)
        finally:
            self.port_allocator.release(port)
            self._notify()

    def __del__(self):
        if getattr(self, "_process", None) is not None:
            self.close()

    async def __aenter__(self) -> "LlamaCppSupervisor":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _bring_up(self) -> None:
        logger.info(
            f"Starting llama-server <{self.name}> for {self.config.kind.value} model {self.config.model_path}",
        )
        self._state = ReadinessState.STARTING
        try:
            await self._launch()
        except ProcessCrashed as e:
            failure = SpawnFailure(
                f"llama-server <{self.name}> exited with return code {e.returncode} before becoming ready",
            )
            logger.error(f"{failure}; last output:\n{self._log_tail()}")
            await self._terminate(failure)
            raise failure from e
        except SupervisorError as e:
            logger.error(f"Failed to start llama-server <{self.name}>: {e}")
            await self._terminate(e)
            raise
        except BaseException:
            await self._terminate(None)
            raise

        self._mark_ready()
        self._monitor_task = asyncio.ensure_future(self._monitor())

    async def _launch(self) -> None:
        """Allocate a port, spawn the process and probe it. Leaves cleanup to the caller."""
        self._port = await self.port_allocator.allocate()
        process = await self._spawn(self._port)
        self._process = process
        self._log_path = self.launcher.log_path(self.name, self._port)
        self._state = ReadinessState.PROBING

        try:
            await self.prober.await_ready(
                api_endpoint(self.settings.host, self._port),
                self.settings.readiness_timeout,
                is_alive=lambda: process.poll() is None,
                name=self.name,
            )
        except ProcessCrashed:
            raise ProcessCrashed(self.name, process.returncode) from None

    async def _spawn(self, port: int) -> subprocess.Popen:
        spawning = asyncio.ensure_future(asyncio.to_thread(self.launcher.spawn, self.config, port, self.name))
        try:
            return await asyncio.shield(spawning)
        except asyncio.CancelledError:
            # the worker thread creates the process regardless; keep it so teardown reaps it
            with contextlib.suppress(SpawnFailure):
                self._process = await spawning
            raise

    def _mark_ready(self) -> None:
        self._state = ReadinessState.READY
        self._pending = None
        logger.info(f"llama-server <{self.name}> is ready on port {self._port} (pid {self.pid})")

    async def _monitor(self) -> None:
        while self._state is ReadinessState.READY:
            await asyncio.sleep(self.settings.monitor_interval)
            if self._state is not ReadinessState.READY:
                return
            if HealthChecker.check_process_running(self._process):
                continue

            crash = ProcessCrashed(self.name, self._process.returncode if self._process is not None else None)
            self._state = ReadinessState.RESTARTING
            logger.warning(f"{crash}; last output:\n{self._log_tail()}")
            self._pending = asyncio.ensure_future(self._restart(crash))
            try:
                await asyncio.shield(self._pending)
            except RestartLimitExceeded:
                return

    async def _restart(self, crash: ProcessCrashed) -> None:
        self._state = ReadinessState.RESTARTING
        await self._release_process()

        attempt = 0
        while self._restarts < self.settings.max_restarts:
            self._restarts += 1
            attempt += 1
            delay = min(self.settings.restart_backoff * 2 ** (attempt - 1), self.settings.max_backoff)
            logger.info(
                f"Restarting llama-server <{self.name}> in {delay:.1f}s "
                f"(restart {self._restarts}/{self.settings.max_restarts})",
            )
            await asyncio.sleep(delay)
            try:
                await self._launch()
            except SupervisorError as e:
                logger.warning(f"Restart {self._restarts} of llama-server <{self.name}> failed: {e}")
                self._state = ReadinessState.RESTARTING
                await self._release_process()
                continue
            self._mark_ready()
            return

        failure = RestartLimitExceeded(self.name, self.settings.max_restarts)
        failure.__cause__ = crash
        logger.error(f"{failure}; marking backend unavailable")
        await self._terminate(failure)
        raise failure

    async def _terminate(self, failure: SupervisorError | None) -> None:
        self._state = ReadinessState.TERMINATED
        if self._failure is None:
            self._failure = failure
        self._pending = None
        await self._release_process()
        self._notify()

    async def _release_process(self) -> None:
        process, self._process = self._process, None
        port, self._port = self._port, None
        try:
            if process is not None:
                await asyncio.to_thread(self.launcher.terminate, process, self.settings.terminate_timeout)
                logger.info(f"llama-server <{self.name}> (pid {process.pid}) exited with {process.returncode}")
        finally:
            self.port_allocator.release(port)

    def _notify(self) -> None:
        if self._terminated.is_set():
            return
        # waiters may belong to a loop that is already closed
        with contextlib.suppress(RuntimeError):
            self._terminated.set()
        for callback in self._callbacks:
            try:
                callback(self._failure)
            except Exception:
                logger.exception(f"Termination callback for llama-server <{self.name}> failed")

    def _log_tail(self) -> str:
        if self._log_path is None:
            return ""
        return self.launcher.read_log_tail(self._log_path)
