# paygate/error_handlers.py
import logging
import traceback

from flask import jsonify, request

from paygate.errors import InvalidTransition, PaymentError

logger = logging.getLogger(__name__)


def register_error_handlers(app):
    """Register all error handlers for the application"""

    @app.errorhandler(PaymentError)
    def handle_payment_error(error):
        if isinstance(error, InvalidTransition):
            logger.info(f"Transition rejected: {error.message} - Path: {request.path}")
        elif error.status_code >= 500:
            logger.error(f"{error.code}: {error.message} - Path: {request.path}")
        else:
            logger.warning(f"{error.code}: {error.message} - Path: {request.path}")

        response = jsonify({**error.to_dict(), "path": request.path})
        response.status_code = error.status_code
        return response

    @app.errorhandler(404)
    def not_found(e):
        logger.info(f"Not found: {request.path}")
        return jsonify({
            "error": "Not found",
            "message": "The requested resource was not found on the server.",
            "path": request.path
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        logger.warning(f"Method not allowed: {request.method} {request.path}")
        return jsonify({
            "error": "Method not allowed",
            "message": f"The {request.method} method is not supported for this endpoint.",
            "path": request.path
        }), 405

    @app.errorhandler(500)
    def server_error(e):
        logger.error(f"Server error: {str(e)} - Path: {request.path}")
        if app.config.get('DEBUG', False):
            logger.error(f"Traceback: {traceback.format_exc()}")
        return jsonify({
            "error": "Server error",
            "message": "An internal server error occurred. Please try again later.",
            "path": request.path
        }), 500
