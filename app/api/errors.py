"""Error handlers for the application.

Every error leaves the API as ``{"error": <title>, "message": <text>}``
with the status carried by the exception.
"""
from flask import jsonify
from werkzeug.exceptions import HTTPException
from werkzeug.http import HTTP_STATUS_CODES

from app.core.bulk.errors import BulkError
from app.core.pingone.exceptions import PingOneError
from app.core.request_queue import QueueFullError


def _error_response(status_code: int, message: str):
    title = HTTP_STATUS_CODES.get(status_code, "Error")
    return jsonify({"error": title, "message": message}), status_code


def register_error_handlers(app):
    """Register error handlers with the Flask app."""

    @app.errorhandler(PingOneError)
    def pingone_error(error):
        """PingOne failures keep their status and friendly message."""
        app.logger.warning(f"PingOne error ({error.status_code}): {error.message}")
        return _error_response(error.status_code, error.message)

    @app.errorhandler(BulkError)
    def bulk_error(error):
        """Validation, unknown sessions and resolution conflicts."""
        return _error_response(error.status_code, error.message)

    @app.errorhandler(QueueFullError)
    def queue_full(error):
        """Local request queue saturated."""
        app.logger.warning(str(error))
        return _error_response(503, f"Server busy: {error}. Please retry shortly.")

    @app.errorhandler(HTTPException)
    def http_error(error):
        """Werkzeug HTTP errors (404, 405, 413, ...) as JSON."""
        return _error_response(error.code or 500, error.description or HTTP_STATUS_CODES.get(error.code, ""))

    @app.errorhandler(Exception)
    def handle_exception(error):
        """Handle uncaught exceptions."""
        # ALWAYS log the error (even in production) - logs are secure
        app.logger.error(f"Unhandled exception: {error}", exc_info=True)
        return _error_response(500, "An unexpected error occurred")
