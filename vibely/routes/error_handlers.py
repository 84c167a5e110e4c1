from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
import logging

from vibely.utils.errors import (
    ChatError,
    ConversationNotFound,
    InvalidInput,
    NotAuthenticated,
    PersistenceFailure,
    SessionClosed,
    SubscriptionFailure,
)

logger = logging.getLogger(__name__)

STATUS_CODES = {
    InvalidInput: status.HTTP_400_BAD_REQUEST,
    NotAuthenticated: status.HTTP_401_UNAUTHORIZED,
    ConversationNotFound: status.HTTP_404_NOT_FOUND,
    SessionClosed: status.HTTP_409_CONFLICT,
    PersistenceFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
    SubscriptionFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_code_for(error: ChatError) -> int:
    for error_type, code in STATUS_CODES.items():
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_frame(error: ChatError, **extra) -> dict:
    return {"type": "error", "code": error.code, "detail": error.detail, **extra}


async def chat_error_handler(request: Request, exc: ChatError):
    code = status_code_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
    return JSONResponse(status_code=code, content={"detail": exc.detail, "code": exc.code})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ChatError, chat_error_handler)
