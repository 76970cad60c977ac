import asyncio
from typing import Callable, Optional

from llama_cpp_server.frameworks_drivers.config import SupervisorSettings
from llama_cpp_server.shared.errors import ProcessCrashed, ReadinessTimeout
from llama_cpp_server.shared.health_checker import HealthChecker
from llama_cpp_server.shared.logger import Logger

logger = Logger.get(__name__)


class ReadinessProber:
    """
    Polls a llama-server health surface until the model is loaded.
    """

    def __init__(
        self,
        health_endpoint: str = "/health",
        initial_backoff: float = 0.5,
        max_backoff: float = 5.0,
        backoff_factor: float = 2.0,
        request_timeout: float = 2.0,
    ):
        self.health_endpoint = health_endpoint
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_factor = backoff_factor
        self.request_timeout = request_timeout

    @classmethod
    def from_settings(cls, settings: SupervisorSettings) -> "ReadinessProber":
        return cls(
            health_endpoint=settings.health_endpoint,
            initial_backoff=settings.initial_backoff,
            max_backoff=settings.max_backoff,
            backoff_factor=settings.backoff_factor,
            request_timeout=settings.probe_request_timeout,
        )

    async def await_ready(
        self,
        endpoint: str,
        timeout: float,
        is_alive: Optional[Callable[[], bool]] = None,
        name: str = "llama-server",
    ) -> int:
        """
        Wait until GET <endpoint><health_endpoint> answers 200.

        Refused connections and non-200 answers are expected while the model
        loads. Every request and every sleep is clipped to the remaining
        budget, so the call never outlives the timeout by more than a
        scheduling tick.

        Args:
            endpoint: Base URL, e.g. http://127.0.0.1:8080
            timeout: Overall budget in seconds.
            is_alive: Optional liveness callback for the probed process.
            name: Name used in log messages and errors.

        Returns:
            The number of probe attempts made.

        Raises:
            ReadinessTimeout: If the budget elapses first.
            ProcessCrashed: If is_alive reports the process gone.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        url = f"{endpoint}{self.health_endpoint}"
        delay = self.initial_backoff
        attempt = 0

        logger.debug(f"Waiting for llama-server <{name}> at {url}")
        while True:
            await asyncio.sleep(min(delay, max(deadline - loop.time(), 0)))
            if is_alive is not None and not is_alive():
                raise ProcessCrashed(name, None)

            remaining = deadline - loop.time()
            if remaining <= 0:
                break

            attempt += 1
            try:
                healthy = await asyncio.wait_for(
                    HealthChecker.check_url(url, min(self.request_timeout, remaining)), remaining,
                )
            except asyncio.TimeoutError:
                healthy = False

            if healthy:
                logger.info(f"llama-server <{name}> is ready after {attempt} probe(s)")
                return attempt

            logger.debug(f"llama-server <{name}> not ready on attempt {attempt}")
            if loop.time() >= deadline:
                break
            delay = min(delay * self.backoff_factor, self.max_backoff)

        raise ReadinessTimeout(endpoint, timeout)
