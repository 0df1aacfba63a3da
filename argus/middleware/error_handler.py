"""
Argus Escrow — Domain Error Handler
Maps ArgusError codes to HTTP responses with a stable JSON body.
"""
import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse

from argus.exceptions import ArgusError

logger = logging.getLogger("argus.errors")

STATUS_CODE_MAP = {
    "INVALID_ADDRESS": status.HTTP_400_BAD_REQUEST,
    "AMOUNT_TOO_SMALL": status.HTTP_400_BAD_REQUEST,
    "INSUFFICIENT_BALANCE": status.HTTP_402_PAYMENT_REQUIRED,
    "DUPLICATE_REQUEST": status.HTTP_409_CONFLICT,
    "WITHDRAWAL_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "INVALID_ENTRY_STATE": status.HTTP_409_CONFLICT,
    "CHAIN_NOT_READY": status.HTTP_503_SERVICE_UNAVAILABLE,
    "RPC_FAILURE": status.HTTP_502_BAD_GATEWAY,
    "RPC_TIMEOUT": status.HTTP_504_GATEWAY_TIMEOUT,
    "OPERATION_TIMEOUT": status.HTTP_504_GATEWAY_TIMEOUT,
    "OPERATION_FAILED": status.HTTP_502_BAD_GATEWAY,
}


async def argus_exception_handler(request: Request, exc: ArgusError) -> JSONResponse:
    """Convert domain exceptions to HTTP responses: {"error": code, "message": ...}."""
    status_code = STATUS_CODE_MAP.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)

    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.code,
            "message": exc.message,
        },
    )
