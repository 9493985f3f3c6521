"""
Shared-secret check for the cron trigger and control endpoints.
"""
import hmac
from functools import wraps
from flask import request, current_app, abort


def verify_bearer_token(header_value, secret):
    """Constant-time check of an 'Authorization: Bearer <secret>' header value."""
    if not header_value or not header_value.startswith('Bearer '):
        return False
    token = header_value[len('Bearer '):].strip()
    return hmac.compare_digest(token.encode('utf-8'), secret.encode('utf-8'))


def cron_secret_required(f):
    """Require the CRON_SECRET bearer token when one is configured."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        secret = current_app.config.get('CRON_SECRET')
        if not secret:
            return f(*args, **kwargs)

        if not verify_bearer_token(request.headers.get('Authorization'), secret):
            current_app.logger.warning(f"Invalid cron token from {request.remote_addr}")
            abort(401)

        return f(*args, **kwargs)

    return decorated_function
