# apps/backend/docquiz/errors.py
"""Domain errors.

Callers tell "nothing to show" (NotFound) apart from "something is broken"
(UpstreamFailure, ConfigurationError) by type, not by parsing messages.
"""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class QuizError(Exception):
    code = "quiz_error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.code


class Unauthorized(QuizError):
    code = "unauthorized"
    status_code = 401


class NotFound(QuizError):
    code = "not_found"
    status_code = 404


class BadRequest(QuizError):
    code = "bad_request"
    status_code = 400


class UnprocessableDocument(BadRequest):
    code = "unprocessable_document"
    status_code = 422


class MalformedQuestion(BadRequest):
    code = "malformed_question"


class ConfigurationError(QuizError):
    code = "configuration_error"
    status_code = 500


class UpstreamFailure(QuizError):
    code = "upstream_failure"
    status_code = 502


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(QuizError)
    async def _quiz_error_handler(request: Request, exc: QuizError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "detail": exc.message},
        )
