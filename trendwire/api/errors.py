"""
JSON error responses for the control endpoints.

Every error body is {"error": "<code>", "message": "<text>"}. Scheduler
exceptions carry their own code; the HTTP status depends on whether the
operator asked for something impossible (400) or the service failed (500).
"""
from flask import jsonify, current_app
from werkzeug.exceptions import HTTPException


# Scheduler error codes that are the caller's fault
CLIENT_ERROR_CODES = frozenset({'unknown_job', 'invalid_transition', 'invalid_position'})


def api_error(code: str, message: str, status_code: int = 400):
    """
    Build a JSON error response.

    Example:
        return api_error('invalid_position', 'position must be an integer.', 400)
    """
    response = jsonify({
        'error': code,
        'message': message
    })
    response.status_code = status_code
    return response


def status_for_code(code: str) -> int:
    return 400 if code in CLIENT_ERROR_CODES else 500


def register_error_handlers(blueprint):
    """Attach JSON handlers for HTTP errors and scheduler exceptions to blueprint."""
    from trendwire.generation.errors import GenerationError, PersistenceUnavailableError

    @blueprint.errorhandler(GenerationError)
    def generation_error(e):
        status_code = status_for_code(e.code)
        if isinstance(e, PersistenceUnavailableError):
            current_app.logger.error(f'Database unavailable: {e}')
            return api_error(e.code, 'The database is currently unavailable.', status_code)
        if status_code == 400:
            current_app.logger.warning(f'Rejected operator request: {e}')
        else:
            current_app.logger.error(f'Generation error: {e}')
        return api_error(e.code, str(e), status_code)

    @blueprint.errorhandler(401)
    def unauthorized(e):
        return api_error('unauthorized', 'Authentication required.', 401)

    @blueprint.errorhandler(500)
    def internal_error(e):
        current_app.logger.error(f'API Internal Error: {e}')
        return api_error('internal_error', 'An internal error occurred. Please try again later.', 500)

    @blueprint.errorhandler(HTTPException)
    def handle_http_exception(e):
        return api_error(e.name.lower().replace(' ', '_'), e.description or str(e), e.code)


# Error codes a client of the control API can receive
ERROR_CODES = {
    'bad_request': 'The request was malformed or missing required parameters.',
    'invalid_position': 'position must be a positive integer.',
    'unknown_job': 'No job exists at that position in today\'s plan.',
    'invalid_transition': 'The job is not in a state that allows this operation.',
    'plan_invariant_violation': 'The refreshed plan was invalid; the previous plan was kept.',
    'plan_conflict': 'A job changed while the plan was being refreshed; the previous plan was kept.',
    'persistence_unavailable': 'The database could not be reached.',
    'unauthorized': 'A valid Bearer token is required.',
    'internal_error': 'An internal server error occurred.',
}
