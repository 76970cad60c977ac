from fastapi.responses import JSONResponse

from llama_cpp_server.shared.error_utils import ErrorUtils
from llama_cpp_server.shared.logger import Logger
from llama_cpp_server.use_cases.get_health import GetHealth

logger = Logger.get(__name__)


class HealthController:
    """Serves the supervisor report on /health; a degraded report is still a 200."""

    def __init__(self, get_health: GetHealth):
        self.get_health = get_health

    def health(self):
        try:
            return self.get_health.execute()
        except Exception as e:
            logger.exception("Failed to collect supervisor status")
            return JSONResponse(
                status_code=500,
                content=ErrorUtils.format_error_response(
                    f"Health check failed: {e}", ErrorUtils.HEALTH_CHECK_ERROR, code=500,
                ),
            )
