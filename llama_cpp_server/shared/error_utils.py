from typing import Optional


class ErrorUtils:
    BACKEND_UNAVAILABLE = "backend_unavailable"
    HEALTH_CHECK_ERROR = "health_check_error"

    @staticmethod
    def format_error_response(message: str, error_type: str, code: Optional[int] = None) -> dict:
        """
        Build the error body returned by the HTTP surface.

        Args:
            message: Human readable description of the failure.
            error_type: Machine readable category, e.g. BACKEND_UNAVAILABLE.
            code: HTTP status the body is sent with, included when given.

        Returns:
            {"error": {"message": ..., "type": ..., ["code": ...]}}
        """
        error = {"message": message, "type": error_type}
        if code is not None:
            error["code"] = code
        return {"error": error}

    @staticmethod
    def describe(exc: Optional[BaseException]) -> Optional[str]:
        """Render a supervisor failure as `ClassName: message` for status reports."""
        if exc is None:
            return None
        message = str(exc)
        return f"{type(exc).__name__}: {message}" if message else type(exc).__name__
