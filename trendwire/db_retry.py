"""
Database retry utilities for handling transient connection errors.

Provides a decorator for retrying database operations when SSL connections
are unexpectedly closed or other transient errors occur. When the database
stays unreachable the decorator raises PersistenceUnavailableError so
callers can switch to their cached fallback instead of crashing.
"""

import logging
import time
import functools
from typing import TypeVar, Callable

from flask import current_app
from sqlalchemy.exc import OperationalError, DBAPIError

from trendwire.generation.errors import PersistenceUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def is_connection_error(exc: Exception) -> bool:
    """Check if exception is a transient connection error worth retrying."""
    error_msg = str(exc).lower()
    connection_indicators = [
        'ssl connection has been closed',
        'connection reset',
        'connection refused',
        'connection timed out',
        'server closed the connection',
        'lost connection',
        'could not connect',
        'network error',
        'broken pipe',
        'database is locked',
    ]
    return any(indicator in error_msg for indicator in connection_indicators)


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Exponential backoff: base, 2*base, 4*base, ..."""
    return base_delay * (2 ** (attempt - 1))


def _reset_session(db, dispose_pool: bool):
    try:
        db.session.rollback()
    except Exception as e:
        logger.debug(f"Rollback during retry failed: {e}")
    try:
        db.session.remove()
    except Exception as e:
        logger.debug(f"Session remove during retry failed: {e}")
    if dispose_pool:
        try:
            db.engine.dispose()
        except Exception as e:
            logger.debug(f"Engine dispose during retry failed: {e}")


def with_db_retry(max_attempts: int = None, delay: float = None):
    """
    Decorator for retrying database operations on transient connection errors.

    Handles SSL connection drops and other transient database errors by:
    1. Rolling back the failed transaction
    2. Removing the poisoned session from the thread-local
    3. Disposing the engine connection pool to force fresh connections
    4. Retrying the operation with exponential backoff

    Once attempts are exhausted (or the error is an OperationalError that is
    not worth retrying) PersistenceUnavailableError is raised from the
    original exception. Other errors propagate unchanged after a rollback.

    Args:
        max_attempts: Maximum retry attempts (default from config)
        delay: Base delay between retries in seconds (default from config)

    Usage:
        @with_db_retry()
        def my_database_function():
            # database operations here
            pass
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            from trendwire import db

            attempts = max_attempts or current_app.config.get('DB_RETRY_ATTEMPTS', 3)
            base_delay = delay if delay is not None else current_app.config.get('DB_RETRY_DELAY', 1)

            for attempt in range(1, attempts + 1):
                try:
                    return func(*args, **kwargs)

                except (OperationalError, DBAPIError) as e:
                    if not is_connection_error(e) or attempt == attempts:
                        logger.error(
                            f"Database error in {func.__name__} (attempt {attempt}/{attempts}): {e}"
                        )
                        _reset_session(db, dispose_pool=False)
                        if isinstance(e, OperationalError):
                            raise PersistenceUnavailableError(
                                f"{func.__name__} failed after {attempt} attempt(s): {e}"
                            ) from e
                        raise

                    wait = backoff_delay(base_delay, attempt)
                    logger.warning(
                        f"Transient DB error in {func.__name__} (attempt {attempt}/{attempts}): {e}. "
                        f"Retrying in {wait}s..."
                    )
                    _reset_session(db, dispose_pool=True)
                    time.sleep(wait)

                except Exception as e:
                    logger.error(f"Unexpected error in {func.__name__}: {e}")
                    try:
                        db.session.rollback()
                    except Exception as rollback_error:
                        logger.debug(f"Rollback failed: {rollback_error}")
                    raise

        return wrapper
    return decorator


def cleanup_db_session():
    """
    Clean up database session after background job completes.

    Call this in a finally block for all scheduler jobs to ensure
    the session is removed and connections are returned to the pool.
    """
    from trendwire import db
    try:
        db.session.remove()
    except Exception as e:
        logger.debug(f"Session cleanup error (safe to ignore): {e}")
