import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from llama_cpp_server.entities.workload import ReadinessState
from llama_cpp_server.frameworks_drivers.supervisor import LlamaCppSupervisor, api_endpoint
from llama_cpp_server.shared.errors import (
    PortExhausted,
    ProcessCrashed,
    ReadinessTimeout,
    RestartLimitExceeded,
    SpawnFailure,
    SupervisorNotReady,
    SupervisorTerminated,
)
from shared.process_utils import wait_until


def dead_process(pid: int) -> MagicMock:
    process = MagicMock()
    process.pid = pid
    process.returncode = 1
    process.poll.return_value = 1
    return process


@pytest.fixture
def supervisor(completion_config, unit_settings, mock_allocator, mock_launcher, mock_prober):
    return LlamaCppSupervisor(
        "completion",
        completion_config,
        unit_settings,
        port_allocator=mock_allocator,
        launcher=mock_launcher,
        prober=mock_prober,
    )


class TestApiEndpoint:
    def test_loopback_host(self):
        assert api_endpoint("127.0.0.1", 8080) == "http://127.0.0.1:8080"

    def test_wildcard_host_maps_to_loopback(self):
        assert api_endpoint("0.0.0.0", 8080) == "http://127.0.0.1:8080"


class TestSupervisorStart:
    @pytest.mark.asyncio
    async def test_start_reaches_ready(self, supervisor, mock_launcher, mock_prober, completion_config):
        await supervisor.start()

        assert supervisor.state is ReadinessState.READY
        assert supervisor.port() == 45678
        assert supervisor.endpoint == "http://127.0.0.1:45678"
        assert supervisor.pid == 4242
        mock_launcher.spawn.assert_called_once_with(completion_config, 45678, "completion")
        endpoint, timeout = mock_prober.await_ready.call_args[0]
        assert endpoint == "http://127.0.0.1:45678"
        assert timeout == 60.0
        await supervisor.stop()

    def test_port_before_ready_raises(self, supervisor):
        assert supervisor.state is ReadinessState.NOT_STARTED
        with pytest.raises(SupervisorNotReady):
            supervisor.port()

    @pytest.mark.asyncio
    async def test_concurrent_start_spawns_once(self, supervisor, mock_allocator, mock_launcher):
        await asyncio.gather(supervisor.start(), supervisor.start(), supervisor.start())

        mock_allocator.allocate.assert_awaited_once()
        mock_launcher.spawn.assert_called_once()
        assert supervisor.state is ReadinessState.READY

        await supervisor.start()
        mock_launcher.spawn.assert_called_once()
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_state_moves_through_probing(self, supervisor, mock_prober):
        seen = []

        async def record_state(*args, **kwargs):
            seen.append(supervisor.state)
            return 1

        mock_prober.await_ready.side_effect = record_state
        await supervisor.start()

        assert seen == [ReadinessState.PROBING]
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_spawn_failure_releases_port(self, supervisor, mock_launcher, mock_allocator):
        mock_launcher.spawn.side_effect = SpawnFailure("llama-server binary not found")

        with pytest.raises(SpawnFailure):
            await supervisor.start()

        assert supervisor.state is ReadinessState.TERMINATED
        mock_allocator.release.assert_called_once_with(45678)
        assert isinstance(supervisor.failure, SpawnFailure)
        with pytest.raises(SpawnFailure):
            await supervisor.start()
        mock_launcher.spawn.assert_called_once()

    @pytest.mark.asyncio
    async def test_port_exhausted_propagates(self, supervisor, mock_allocator, mock_launcher):
        mock_allocator.allocate.side_effect = PortExhausted(16)

        with pytest.raises(PortExhausted):
            await supervisor.start()

        assert supervisor.state is ReadinessState.TERMINATED
        mock_launcher.spawn.assert_not_called()

    @pytest.mark.asyncio
    async def test_readiness_timeout_reaps_process(self, supervisor, mock_prober, mock_launcher, mock_process,
                                                   mock_allocator):
        mock_prober.await_ready.side_effect = ReadinessTimeout("http://127.0.0.1:45678", 60.0)

        with pytest.raises(ReadinessTimeout):
            await supervisor.start()

        assert supervisor.state is ReadinessState.TERMINATED
        mock_launcher.terminate.assert_called_once_with(mock_process, 1.0)
        mock_allocator.release.assert_called_once_with(45678)
        assert supervisor.pid is None

    @pytest.mark.asyncio
    async def test_exit_before_ready_is_spawn_failure(self, supervisor, mock_prober, mock_process, mock_launcher):
        mock_process.returncode = 1
        mock_prober.await_ready.side_effect = ProcessCrashed("completion", None)

        with pytest.raises(SpawnFailure, match="return code 1"):
            await supervisor.start()

        mock_launcher.terminate.assert_called_once_with(mock_process, 1.0)


class TestSupervisorStop:
    @pytest.mark.asyncio
    async def test_stop_reaps_and_is_absorbing(self, supervisor, mock_launcher, mock_process):
        callback = MagicMock()
        supervisor.add_termination_callback(callback)
        await supervisor.start()

        await supervisor.stop()
        await supervisor.stop()

        mock_launcher.terminate.assert_called_once_with(mock_process, 1.0)
        assert supervisor.state is ReadinessState.TERMINATED
        assert await supervisor.wait_terminated() is None
        callback.assert_called_once_with(None)
        with pytest.raises(SupervisorTerminated):
            await supervisor.start()

    @pytest.mark.asyncio
    async def test_stop_while_probing(self, supervisor, mock_prober, mock_launcher, mock_process):
        never = asyncio.Event()

        async def hang(*args, **kwargs):
            await never.wait()

        mock_prober.await_ready.side_effect = hang
        starting = asyncio.create_task(supervisor.start())
        await wait_until(lambda: supervisor.state is ReadinessState.PROBING, timeout=2.0)

        await supervisor.stop()

        with pytest.raises(SupervisorTerminated):
            await starting
        mock_launcher.terminate.assert_called_once_with(mock_process, 1.0)
        assert supervisor.state is ReadinessState.TERMINATED

    @pytest.mark.asyncio
    async def test_context_manager(self, supervisor, mock_launcher, mock_process):
        async with supervisor as server:
            assert server.state is ReadinessState.READY

        assert supervisor.state is ReadinessState.TERMINATED
        mock_launcher.terminate.assert_called_once_with(mock_process, 1.0)

    @pytest.mark.asyncio
    async def test_close_is_synchronous(self, supervisor, mock_launcher, mock_process, mock_allocator):
        await supervisor.start()

        supervisor.close()

        assert supervisor.state is ReadinessState.TERMINATED
        mock_launcher.terminate.assert_called_once_with(mock_process, 1.0)
        mock_allocator.release.assert_called_with(45678)

    @pytest.mark.asyncio
    async def test_close_signals_termination(self, supervisor, mock_launcher):
        callback = MagicMock()
        supervisor.add_termination_callback(callback)
        await supervisor.start()

        supervisor.close()

        assert await asyncio.wait_for(supervisor.wait_terminated(), 1.0) is None
        callback.assert_called_once_with(None)

        await supervisor.stop()
        callback.assert_called_once_with(None)
        mock_launcher.terminate.assert_called_once()


class TestSupervisorRestart:
    @pytest.mark.asyncio
    async def test_crash_leaves_ready_state_immediately(self, supervisor, mock_launcher, mock_process):
        replacement = MagicMock()
        replacement.pid = 4343
        replacement.poll.return_value = None
        mock_launcher.spawn.side_effect = [mock_process, replacement]
        seen = []

        def record_tail(path):
            # runs in the same step that detects the crash, before the restart task is scheduled
            try:
                supervisor.port()
            except SupervisorNotReady:
                seen.append(supervisor.state)
            return ""

        mock_launcher.read_log_tail.side_effect = record_tail
        await supervisor.start()

        mock_process.poll.return_value = 1
        await wait_until(lambda: supervisor.pid == 4343 and supervisor.state is ReadinessState.READY)

        assert seen == [ReadinessState.RESTARTING]
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_restart_after_crash_uses_fresh_port(self, supervisor, mock_allocator, mock_launcher, mock_process):
        replacement = MagicMock()
        replacement.pid = 4343
        replacement.poll.return_value = None
        mock_launcher.spawn.side_effect = [mock_process, replacement]
        mock_allocator.allocate.side_effect = [45678, 45679]
        await supervisor.start()

        mock_process.returncode = -9
        mock_process.poll.return_value = -9
        await wait_until(lambda: supervisor.pid == 4343 and supervisor.state is ReadinessState.READY)

        assert supervisor.port() == 45679
        assert supervisor.restarts == 1
        mock_allocator.release.assert_any_call(45678)
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_restart_budget_exhausted(self, supervisor, mock_launcher, mock_allocator):
        callback = MagicMock()
        supervisor.add_termination_callback(callback)
        mock_launcher.spawn.side_effect = [dead_process(pid) for pid in (1, 2, 3)]
        mock_allocator.allocate.side_effect = [40001, 40002, 40003]

        await supervisor.start()
        failure = await asyncio.wait_for(supervisor.wait_terminated(), 5.0)

        assert isinstance(failure, RestartLimitExceeded)
        assert isinstance(failure.__cause__, ProcessCrashed)
        assert supervisor.state is ReadinessState.TERMINATED
        assert supervisor.restarts == 2
        assert mock_launcher.spawn.call_count == 3
        callback.assert_called_once_with(failure)
        with pytest.raises(RestartLimitExceeded):
            await supervisor.start()
        assert supervisor.status().failure.startswith("RestartLimitExceeded")

    @pytest.mark.asyncio
    async def test_failed_restart_attempt_counts_against_budget(self, supervisor, mock_launcher, mock_process,
                                                               mock_allocator):
        healthy = MagicMock()
        healthy.pid = 5555
        healthy.poll.return_value = None
        mock_launcher.spawn.side_effect = [mock_process, SpawnFailure("boom"), healthy]
        mock_allocator.allocate.side_effect = [40001, 40002, 40003]
        await supervisor.start()

        mock_process.poll.return_value = 1
        await wait_until(lambda: supervisor.pid == 5555 and supervisor.state is ReadinessState.READY)

        assert supervisor.restarts == 2
        assert supervisor.port() == 40003
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_start_waits_for_restart(self, supervisor, mock_launcher, mock_process, mock_prober):
        replacement = MagicMock()
        replacement.pid = 4343
        replacement.poll.return_value = None
        mock_launcher.spawn.side_effect = [mock_process, replacement]
        await supervisor.start()

        gate = asyncio.Event()

        async def slow_probe(*args, **kwargs):
            await gate.wait()
            return 1

        mock_prober.await_ready = AsyncMock(side_effect=slow_probe)
        mock_process.poll.return_value = 1
        await wait_until(lambda: supervisor.state is ReadinessState.PROBING)

        waiter = asyncio.create_task(supervisor.start())
        await asyncio.sleep(0.05)
        assert not waiter.done()

        gate.set()
        await asyncio.wait_for(waiter, 2.0)
        assert supervisor.state is ReadinessState.READY
        assert supervisor.pid == 4343
        await supervisor.stop()


class TestSupervisorStatus:
    @pytest.mark.asyncio
    async def test_status_reports_state(self, supervisor):
        before = supervisor.status()
        assert before.state is ReadinessState.NOT_STARTED
        assert before.port is None

        await supervisor.start()
        status = supervisor.status()

        assert status.name == "completion"
        assert status.state is ReadinessState.READY
        assert status.port == 45678
        assert status.pid == 4242
        assert status.restarts == 0
        assert status.failure is None
        await supervisor.stop()
