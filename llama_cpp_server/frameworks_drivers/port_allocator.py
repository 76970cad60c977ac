import asyncio
import socket
import threading

from llama_cpp_server.shared.errors import PortExhausted
from llama_cpp_server.shared.logger import Logger

logger = Logger.get(__name__)


class PortAllocator:
    """
    Hands out free local TCP ports for llama-server instances.

    A port is found by binding an ephemeral socket and closing it again, so the
    reservation is best effort: another process on the host may grab the port
    between our close and the child's own bind. Within this process the issued
    set guarantees that two supervisors never receive the same port until one
    of them releases it.
    """

    _issued: set[int] = set()
    _lock = threading.Lock()

    def __init__(self, host: str = "127.0.0.1", max_attempts: int = 16):
        self.host = host
        self.max_attempts = max_attempts

    def _probe(self) -> int:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind((self.host, 0))
            return s.getsockname()[1]

    def _claim(self, port: int) -> bool:
        with PortAllocator._lock:
            if port in PortAllocator._issued:
                return False
            PortAllocator._issued.add(port)
            return True

    async def allocate(self) -> int:
        """
        Find a free port and mark it as issued.

        Returns:
            The allocated port number.

        Raises:
            PortExhausted: If no unused port was found within max_attempts.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                port = self._probe()
            except OSError as e:
                logger.debug(f"Port probe attempt {attempt} on {self.host} failed: {e}")
            else:
                if self._claim(port):
                    logger.debug(f"Allocated port {port} on attempt {attempt}")
                    return port
                logger.debug(f"Port {port} already issued, retrying")
            await asyncio.sleep(0)

        raise PortExhausted(self.max_attempts)

    @staticmethod
    def release(port: int | None) -> None:
        """Return a port to the pool. Unknown ports are ignored."""
        if port is None:
            return
        with PortAllocator._lock:
            PortAllocator._issued.discard(port)

    @staticmethod
    def issued() -> frozenset[int]:
        with PortAllocator._lock:
            return frozenset(PortAllocator._issued)
