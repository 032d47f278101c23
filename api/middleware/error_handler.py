# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Error handling middleware with RFC 7807 problem responses.
Translates ledger errors and HTTP exceptions into problem documents.
"""

from flask import Flask, request, jsonify
from werkzeug.exceptions import HTTPException
from pydantic import ValidationError
from typing import Dict, Any, Optional
from opentelemetry import trace
import logging

from domain.errors import BenefitError

tracer = trace.get_tracer(__name__)
logger = logging.getLogger(__name__)


def build_problem(
    base_url: str,
    error_type: str,
    title: str,
    status: int,
    detail: str,
    instance: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Build a problem document."""
    problem = {
        "type": f"{base_url.rstrip('/')}/problems/{error_type}",
        "title": title,
        "status": status,
        "detail": detail,
        "instance": instance
    }
    if extra:
        problem.update(extra)
    return problem


class ErrorHandlerMiddleware:
    """Centralized error handling with problem document formatting."""

    def __init__(self, app: Flask, base_url: str):
        self.app = app
        self.base_url = base_url
        self.register_error_handlers()

    def _respond(self, problem: Dict[str, Any]):
        response = jsonify(problem)
        response.status_code = problem["status"]
        response.mimetype = "application/problem+json"
        return response

    def register_error_handlers(self):
        """Register error handlers with Flask application."""

        @self.app.errorhandler(BenefitError)
        def handle_benefit_error(error: BenefitError):
            return self.handle_benefit_error(error)

        @self.app.errorhandler(ValidationError)
        def handle_validation_error(error: ValidationError):
            return self.handle_validation_error(error)

        @self.app.errorhandler(HTTPException)
        def handle_http_exception(error: HTTPException):
            return self.handle_http_exception(error)

        @self.app.errorhandler(Exception)
        def handle_generic_exception(error):
            return self.handle_unexpected_error(error)

    def handle_benefit_error(self, error: BenefitError):
        """Render a ledger error with its payload."""
        with tracer.start_as_current_span("error_handler.benefit_error") as span:
            span.set_attributes({
                "error.type": error.error_type,
                "error.status": error.status_code,
                "http.method": request.method,
                "http.path": request.path
            })

            log = logger.error if error.status_code >= 500 else logger.warning
            log(
                f"Ledger error: {error.error_type}",
                extra={
                    "error_type": error.error_type,
                    "status_code": error.status_code,
                    "detail": error.message,
                    "path": request.path,
                    "method": request.method
                }
            )

            return self._respond(build_problem(
                self.base_url,
                error.error_type,
                error.title,
                error.status_code,
                error.message,
                request.path,
                error.payload
            ))

    def handle_validation_error(self, error: ValidationError):
        """Render pydantic validation failures as 422."""
        errors = [
            {
                "field": ".".join(str(part) for part in item.get("loc", ())),
                "message": item.get("msg"),
                "type": item.get("type")
            }
            for item in error.errors()
        ]
        logger.warning(
            "Request validation failed",
            extra={"path": request.path, "method": request.method, "errors_count": len(errors)}
        )
        return self._respond(build_problem(
            self.base_url,
            "validation-error",
            "Validation Error",
            422,
            "Request validation failed",
            request.path,
            {"errors": errors}
        ))

    def handle_http_exception(self, error: HTTPException):
        """Render werkzeug HTTP exceptions (404, 405, 400...)."""
        title = error.name
        error_type = title.lower().replace(" ", "-")
        detail = str(error.description) if error.description else title

        if error.code >= 500:
            logger.error(f"Server error: {title}", extra={"status_code": error.code, "path": request.path})
        else:
            logger.warning(f"Client error: {title}", extra={"status_code": error.code, "path": request.path})

        return self._respond(build_problem(
            self.base_url, error_type, title, error.code, detail, request.path
        ))

    def handle_unexpected_error(self, error: Exception):
        """Handle unexpected exceptions not caught by specific handlers."""
        with tracer.start_as_current_span("error_handler.unexpected_error") as span:
            span.set_attributes({
                "error.type": "unexpected-error",
                "error.class": error.__class__.__name__,
                "http.method": request.method,
                "http.path": request.path
            })
            span.record_exception(error)

            logger.error(
                f"Unexpected error: {error.__class__.__name__}",
                extra={
                    "error_type": "unexpected-error",
                    "error_class": error.__class__.__name__,
                    "error_message": str(error),
                    "path": request.path,
                    "method": request.method
                },
                exc_info=True
            )

            # Don't expose internal error details
            detail = "An unexpected error occurred"
            if self.app.config.get('ENVIRONMENT') != 'production':
                detail = f"{error.__class__.__name__}: {str(error)}"

            return self._respond(build_problem(
                self.base_url, "internal-server-error", "Internal Server Error", 500, detail, request.path
            ))
