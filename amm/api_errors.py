"""
API error handling. Structured JSON errors with codes.

Every error response: {"error": {"code": "...", "message": "...", "details": {...}}}
"""

from fastapi import Request
from fastapi.responses import JSONResponse

from amm.errors import AMMError


class APIError(Exception):
    """Structured API error with HTTP status and machine-readable code."""

    def __init__(self, status: int, code: str, message: str,
                 details: dict | None = None):
        self.status = status
        self.code = code
        self.message = message
        self.details = details or {}

    def response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status,
            content={"error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }},
        )


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    return exc.response()


async def engine_error_handler(request: Request, exc: AMMError) -> JSONResponse:
    return translate_engine_error(exc).response()


def translate_engine_error(exc: AMMError) -> APIError:
    """Engine errors carry their own code and status; pass them through."""
    return APIError(exc.http_status, exc.code, exc.message, exc.details)
