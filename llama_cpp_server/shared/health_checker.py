import asyncio
import subprocess
from typing import Optional

import requests

from llama_cpp_server.shared.logger import Logger

logger = Logger.get(__name__)


def _get(url: str, timeout: float) -> requests.Response:
    # Loopback probes must never be routed through an HTTP proxy from the environment.
    with requests.Session() as session:
        session.trust_env = False
        return session.get(url, timeout=timeout)


class HealthChecker:
    """
    Utility class for performing health checks on llama-server processes.
    Consolidates the process and HTTP checks used by the prober and the supervisor monitor.
    """

    @staticmethod
    async def check_url(url: str, timeout: float = 5.0) -> bool:
        """
        Check if a URL responds with a successful status code.

        The blocking request runs in a worker thread so the event loop keeps serving
        other supervisors while a probe is outstanding.

        Args:
            url: Full URL of the health surface
            timeout: Request timeout in seconds

        Returns:
            True if the URL responds with 200 status, False otherwise
        """
        try:
            response = await asyncio.to_thread(_get, url, timeout)
        except requests.RequestException as e:
            logger.debug(f"Health check failed for {url}: {e}")
            return False

        if response.status_code == 200:
            logger.debug(f"Health check passed for {url}")
            return True
        # llama-server answers 503 while the model is still loading
        logger.debug(f"Health check not ready for {url}: status {response.status_code}")
        return False

    @staticmethod
    def check_process_running(process: Optional[subprocess.Popen]) -> bool:
        """
        Check if a subprocess is still running.

        Args:
            process: The subprocess to check

        Returns:
            True if the process is running, False otherwise
        """
        if process is None:
            return False

        return_code = process.poll()
        if return_code is not None:
            logger.warning(f"Process {process.pid} has terminated with return code {return_code}")
            return False

        return True
