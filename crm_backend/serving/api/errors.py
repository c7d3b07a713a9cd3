"""
API Error Handlers

Maps ledger failures to HTTP responses with a uniform body:
{"error": {"code": ..., "message": ..., "details": {...}}}
"""

from typing import Dict, Type

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import structlog

from crm_backend.ledger.errors import (
    ConsistencyFailure,
    LedgerError,
    NegativeAmountFailure,
    NotFound,
    ReferentialFailure,
    ValidationFailure,
)

logger = structlog.get_logger(__name__)

STATUS_CODES: Dict[Type[LedgerError], int] = {
    ValidationFailure: 400,
    NotFound: 404,
    ReferentialFailure: 409,
    NegativeAmountFailure: 422,
    ConsistencyFailure: 500,
}


def status_for(error: LedgerError) -> int:
    for error_type in type(error).__mro__:
        if error_type in STATUS_CODES:
            return STATUS_CODES[error_type]
    return 500


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.info
    log(
        "Ledger request rejected",
        path=request.url.path,
        status_code=status_code,
        error_code=exc.code,
        error=exc.message,
    )
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "error": {
                "code": ValidationFailure.code,
                "message": "Request validation failed",
                "details": {"errors": jsonable_errors(exc)},
            }
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
