"""
Error types for the defect criteria service and their JSON handlers.

Services raise these; routes let them propagate and the handlers
registered in create_app() turn them into {"error": ...} responses.
"""
import logging
import sqlite3

from flask import jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class CriteriaError(Exception):
    """Base class for service errors."""
    status_code = 500

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {'error': self.message}
        if self.details:
            payload['details'] = self.details
        return payload


class InputError(CriteriaError):
    """Request is missing or has invalid fields."""
    status_code = 400


class NotFoundError(CriteriaError):
    status_code = 404


class ConflictError(CriteriaError):
    """Operation not allowed in the entity's current state."""
    status_code = 409


class OverrideRejectedError(CriteriaError):
    """Override failed validation; nothing was written."""
    status_code = 422


class StoreUnavailableError(CriteriaError):
    """Backing store could not be reached. Safe to retry."""
    status_code = 503

    def to_dict(self):
        payload = super().to_dict()
        payload['retryable'] = True
        return payload


def register_error_handlers(app):
    """Attach JSON error handlers to the app."""

    @app.errorhandler(CriteriaError)
    def handle_criteria_error(exc):
        headers = {'Retry-After': '1'} if isinstance(exc, StoreUnavailableError) else {}
        return jsonify(exc.to_dict()), exc.status_code, headers

    @app.errorhandler(sqlite3.OperationalError)
    def handle_store_error(exc):
        logger.error("Store unavailable: %s", exc)
        return handle_criteria_error(StoreUnavailableError('Database unavailable, please retry'))

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        return jsonify({'error': exc.description}), exc.code
