# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Error handling middleware with structured HAL responses.
Maps HTTP errors and matching errors to RFC 7807 problem documents.
"""

from flask import Flask, request
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException
from typing import Any, Dict, List, Optional, Tuple
from opentelemetry import trace
import logging

from ..exceptions import (
    InvalidBloodTypeError,
    InvalidCoordinatesError,
    MatchingError,
    NotificationServiceUnavailableError,
    RepositoryUnavailableError,
)

tracer = trace.get_tracer(__name__)
logger = logging.getLogger(__name__)

PROBLEM_BASE_URI = "https://api.donorlink.org/problems"

HTTP_ERROR_TYPES = {
    400: ("bad-request", "Bad Request"),
    404: ("resource-not-found", "Resource Not Found"),
    405: ("method-not-allowed", "Method Not Allowed"),
    409: ("resource-conflict", "Resource Conflict"),
    422: ("validation-error", "Validation Error"),
    500: ("internal-server-error", "Internal Server Error"),
    503: ("service-unavailable", "Service Unavailable"),
}


def build_problem_response(
    base_url: str,
    error_type: str,
    title: str,
    status: int,
    detail: str,
    instance: str,
    validation_errors: Optional[List[Dict[str, Any]]] = None
) -> Dict[str, Any]:
    """Build RFC 7807 compliant error response with HAL links."""
    base_url = base_url.rstrip('/')
    error_response = {
        'type': f"{PROBLEM_BASE_URI}/{error_type}",
        'title': title,
        'status': status,
        'detail': detail,
        'instance': instance
    }

    if validation_errors:
        error_response['errors'] = validation_errors

    links = {
        'help': {'href': f"{base_url}/docs/errors#{error_type}", 'title': "Error documentation"}
    }
    if error_type == "validation-error":
        links['schema'] = {'href': f"{base_url}/openapi/openapi.json", 'title': "API schema"}
    elif error_type == "service-unavailable":
        links['health'] = {'href': f"{base_url}/api/healthz", 'title': "Service health"}

    error_response['_links'] = links
    return error_response


class ErrorHandlerMiddleware:
    """Centralized error handling middleware with HAL response formatting."""

    def __init__(self, app: Flask, base_url: str):
        self.app = app
        self.base_url = base_url
        self.register_error_handlers()

    def register_error_handlers(self):
        """Register error handlers with Flask application."""

        @self.app.errorhandler(NotFoundException)
        @self.app.errorhandler(ConflictException)
        def handle_custom_exception(error):
            return self.problem(error.error_type, error.title, error.status_code, error.message)

        @self.app.errorhandler(InvalidBloodTypeError)
        @self.app.errorhandler(InvalidCoordinatesError)
        def handle_invalid_input(error):
            return self.problem("validation-error", "Validation Error", 422, str(error))

        @self.app.errorhandler(ValidationError)
        def handle_validation_error(error: ValidationError):
            validation_errors = [
                {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
                for err in error.errors()
            ]
            return self.problem(
                "validation-error", "Validation Error", 422,
                "Request validation failed", validation_errors
            )

        @self.app.errorhandler(RepositoryUnavailableError)
        @self.app.errorhandler(NotificationServiceUnavailableError)
        def handle_unavailable(error: MatchingError):
            logger.error(
                f"Dependency unavailable: {error}",
                extra={"extra_fields": {"path": request.path, "error_class": error.__class__.__name__}}
            )
            return self.problem("service-unavailable", "Service Unavailable", 503, str(error))

        @self.app.errorhandler(HTTPException)
        def handle_http_exception(error: HTTPException):
            error_type, title = HTTP_ERROR_TYPES.get(
                error.code, ("http-error", error.name)
            )
            detail = str(error.description) if error.description else title
            return self.problem(error_type, title, error.code, detail)

        @self.app.errorhandler(Exception)
        def handle_generic_exception(error):
            return self.handle_unexpected_error(error)

    def problem(
        self,
        error_type: str,
        title: str,
        status: int,
        detail: str,
        validation_errors: Optional[List[Dict[str, Any]]] = None
    ) -> Tuple[Dict[str, Any], int]:
        with tracer.start_as_current_span("error_handler.problem") as span:
            span.set_attributes({
                "error.type": error_type,
                "error.status": status,
                "http.method": request.method,
                "http.path": request.path
            })

            if status < 500:
                logger.warning(
                    f"Client error: {title}",
                    extra={"extra_fields": {
                        "error_type": error_type,
                        "status_code": status,
                        "detail": detail,
                        "path": request.path,
                        "method": request.method
                    }}
                )

            response = build_problem_response(
                self.base_url, error_type, title, status, detail, request.path, validation_errors
            )
            return response, status

    def handle_unexpected_error(self, error: Exception) -> Tuple[Dict[str, Any], int]:
        """
        Handle unexpected exceptions not caught by specific handlers.

        Args:
            error: Unexpected exception

        Returns:
            Tuple of (error response dict, status code)
        """
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
                extra={"extra_fields": {
                    "error_class": error.__class__.__name__,
                    "error_message": str(error),
                    "path": request.path,
                    "method": request.method
                }},
                exc_info=True
            )

            # Don't expose internal error details
            detail = "An unexpected error occurred"
            if self.app.config.get('ENV') != 'production':
                detail = f"{error.__class__.__name__}: {str(error)}"

            return build_problem_response(
                self.base_url, "internal-server-error", "Internal Server Error",
                500, detail, request.path
            ), 500


class CustomException(Exception):
    """Base class for custom application exceptions."""

    def __init__(self, message: str, status_code: int = 500,
                 error_type: str = "application-error", title: str = "Application Error"):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_type = error_type
        self.title = title


class NotFoundException(CustomException):
    """Exception for resource not found errors."""

    def __init__(self, message: str):
        super().__init__(message, 404, "resource-not-found", "Resource Not Found")


class ConflictException(CustomException):
    """Exception for resource conflict errors."""

    def __init__(self, message: str):
        super().__init__(message, 409, "resource-conflict", "Resource Conflict")
