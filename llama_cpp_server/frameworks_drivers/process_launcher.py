from __future__ import annotations

import os
import shutil
import subprocess
import sys
import tempfile
from collections import deque
from pathlib import Path

from llama_cpp_server.entities.workload import WorkloadKind
from llama_cpp_server.frameworks_drivers.config import SupervisorConfig, SupervisorSettings
from llama_cpp_server.shared.errors import SpawnFailure
from llama_cpp_server.shared.logger import Logger

logger = Logger.get(__name__)


class ProcessLauncher:
    """
    Builds llama-server command lines and starts the process.
    """

    BINARY_NAME = "llama-server.exe" if sys.platform == "win32" else "llama-server"

    def __init__(self, settings: SupervisorSettings | None = None):
        self.settings = settings or SupervisorSettings()

    def resolve_binary(self) -> str:
        """
        Locate the llama-server binary.

        Lookup order: the configured binary_path (which already reflects
        LLAMA_SERVER_BINARY), the directory of the running interpreter, then PATH.

        Raises:
            SpawnFailure: If no executable binary is found.
        """
        if self.settings.binary_path:
            path = Path(self.settings.binary_path)
            if not path.is_file():
                raise SpawnFailure(f"llama-server binary not found at {path}")
            if not os.access(path, os.X_OK):
                raise SpawnFailure(f"llama-server binary at {path} is not executable")
            return str(path)

        sibling = Path(sys.executable).parent / self.BINARY_NAME
        if sibling.is_file() and os.access(sibling, os.X_OK):
            return str(sibling)

        found = shutil.which(self.BINARY_NAME)
        if found is None:
            raise SpawnFailure(
                f"Failed to locate {self.BINARY_NAME}; install it on PATH or set LLAMA_SERVER_BINARY",
            )
        return found

    def build_command(self, config: SupervisorConfig, port: int) -> list[str]:
        cmd = [
            self.resolve_binary(),
            "-m",
            config.model_path,
            "--host",
            self.settings.host,
            "--port",
            str(port),
            "--cont-batching",
            "--parallel",
            str(config.parallelism),
            "--ctx-size",
            str(self.settings.context_size),
            "--n-gpu-layers",
            str(config.num_gpu_layers),
            "--log-disable",
        ]
        if self.settings.n_threads:
            cmd.extend(["--threads", str(self.settings.n_threads)])
        if config.embedding:
            cmd.extend(["--embedding", "--ubatch-size", str(self.settings.embedding_ubatch_size)])
        if config.kind is WorkloadKind.CHAT and config.chat_template:
            cmd.extend(["--chat-template", config.chat_template])
        cmd.extend(self.settings.extra_args)
        return cmd

    def log_path(self, name: str, port: int) -> Path:
        log_dir = Path(self.settings.log_dir or tempfile.gettempdir())
        return log_dir / f"llama-server-{name}-{port}.log"

    def spawn(self, config: SupervisorConfig, port: int, name: str) -> subprocess.Popen:
        """
        Start llama-server for the given config on the given port.

        Output of the child goes to a per-instance log file so a full pipe can
        never stall it; read_log_tail() recovers it for diagnostics.

        Raises:
            SpawnFailure: If the binary is unusable or the OS refuses to start it.
        """
        cmd = self.build_command(config, port)
        log_path = self.log_path(name, port)
        logger.info(f"Starting llama-server <{name}>: {' '.join(cmd)}")
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(log_path, "wb") as log_file:
                process = subprocess.Popen(
                    cmd,
                    env=os.environ.copy(),
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                )
        except OSError as e:
            raise SpawnFailure(f"Failed to start llama-server <{name}>: {e}") from e

        logger.info(f"Started llama-server <{name}> with pid {process.pid} on port {port}, logging to {log_path}")
        return process

    @staticmethod
    def terminate(process: subprocess.Popen | None, timeout: float) -> None:
        """Terminate a subprocess with a timeout, killing if necessary. Always reaps."""
        if process is None:
            return
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=timeout)
                return
            except subprocess.TimeoutExpired:
                logger.warning(f"Process {process.pid} ignored SIGTERM for {timeout}s, killing it")
                process.kill()
        process.wait()

    @staticmethod
    def read_log_tail(path: Path, lines: int = 20) -> str:
        try:
            with open(path, "rb") as f:
                tail = deque(f, maxlen=lines)
        except OSError:
            return ""
        return b"".join(tail).decode("utf-8", errors="ignore")
