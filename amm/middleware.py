"""
Caller identity dependency.

Authentication happens in front of this service; requests arrive with the
caller's account id in the X-Account header. Admin rights are checked by
the engine against AdminConfig, not here.
"""

from typing import Annotated

from fastapi import Depends, Request

from amm.api_errors import APIError


ACCOUNT_HEADER = "x-account"


async def require_caller(request: Request) -> str:
    """Return the calling account id. 401 if the header is missing."""
    account = request.headers.get(ACCOUNT_HEADER, "").strip()
    if not account:
        raise APIError(401, "caller_required", "X-Account header required")
    return account


Caller = Annotated[str, Depends(require_caller)]
