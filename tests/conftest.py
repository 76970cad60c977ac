"""
Test configuration and fixtures for llama-cpp-server tests.
"""
import json
import shutil
import sys
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from llama_cpp_server.entities.workload import WorkloadKind
from llama_cpp_server.frameworks_drivers.config import SupervisorConfig, SupervisorSettings

FAKE_SERVER = Path(__file__).parent / "shared" / "fake_llama_server.py"


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_path = tempfile.mkdtemp()
    yield Path(temp_path)
    shutil.rmtree(temp_path)


@pytest.fixture
def fake_llama_server(temp_dir):
    """An executable wrapper that runs the fake llama-server with this interpreter."""
    if sys.platform == "win32":
        pytest.skip("process tests rely on a POSIX shell wrapper")
    script = temp_dir / "llama-server"
    script.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_SERVER}" "$@"\n')
    script.chmod(0o755)
    return str(script)


@pytest.fixture
def record_file(temp_dir):
    return temp_dir / "spawns.jsonl"


@pytest.fixture
def fast_settings(fake_llama_server, temp_dir, record_file):
    """Supervisor settings pointing at the fake server with short timings."""
    return SupervisorSettings(
        binary_path=fake_llama_server,
        readiness_timeout=10.0,
        initial_backoff=0.05,
        max_backoff=0.2,
        probe_request_timeout=0.5,
        restart_backoff=0.05,
        monitor_interval=0.05,
        terminate_timeout=2.0,
        log_dir=str(temp_dir / "logs"),
        extra_args=["--record", str(record_file)],
    )


@pytest.fixture
def completion_config():
    return SupervisorConfig(kind=WorkloadKind.COMPLETION, model_path="/models/foo.gguf", parallelism=4)


@pytest.fixture
def mock_process():
    process = MagicMock()
    process.pid = 4242
    process.returncode = None
    process.poll.return_value = None
    return process


@pytest.fixture
def mock_launcher(mock_process, temp_dir):
    launcher = MagicMock()
    launcher.spawn.return_value = mock_process
    launcher.log_path.return_value = temp_dir / "llama-server.log"
    launcher.read_log_tail.return_value = ""
    return launcher


@pytest.fixture
def mock_allocator():
    allocator = MagicMock()
    allocator.allocate = AsyncMock(return_value=45678)
    return allocator


@pytest.fixture
def mock_prober():
    prober = MagicMock()
    prober.await_ready = AsyncMock(return_value=1)
    return prober


@pytest.fixture
def unit_settings():
    return SupervisorSettings(
        binary_path="/usr/bin/llama-server",
        restart_backoff=0.0,
        monitor_interval=0.01,
        max_restarts=2,
        terminate_timeout=1.0,
    )


@pytest.fixture
def sample_config_data():
    """Sample configuration data for testing."""
    return {
        "server": {"host": "127.0.0.1", "port": 9000},
        "supervisor": {"readiness_timeout": 30, "max_restarts": 5},
        "completion": {"type": "local", "model_id": "TabbyML/StarCoder-1B", "parallelism": 4},
        "chat": {"type": "local", "model_id": "/models/chat", "chat_template": "{{ messages }}"},
        "embedding": {"type": "http", "api_endpoint": "http://10.0.0.5:8080", "kind": "llama.cpp/embedding"},
    }


@pytest.fixture
def config_file(temp_dir, sample_config_data):
    """Create a temporary config file."""
    config_path = temp_dir / "config.json"
    with open(config_path, "w") as f:
        json.dump(sample_config_data, f, indent=2)
    return str(config_path)
