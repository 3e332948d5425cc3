# errors.py
"""
Domain errors for the slot engine.

Outer-request failures (bad input, unknown ids, empty scope) are raised and mapped to
an HTTP response by the handler installed in create_app. Failures scoped to a single
slot inside a bulk operation are collected as result entries instead of raised.
"""
from fastapi import Request
from fastapi.responses import JSONResponse


class SlotError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def error_name(self) -> str:
        return type(self).__name__


class NotFound(SlotError):
    status_code = 404


class InvalidTransition(SlotError):
    status_code = 409


class EmptyScope(SlotError):
    status_code = 404


class ValidationError(SlotError):
    status_code = 422


class CollaboratorUnavailable(SlotError):
    status_code = 503

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}")
        self.service = service


class QueueNumberOverflow(SlotError):
    status_code = 409


async def slot_error_handler(request: Request, exc: SlotError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.error_name},
    )
