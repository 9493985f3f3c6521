"""
Error taxonomy for the generation scheduler.

Everything raised by the scheduler components derives from GenerationError so
the driver can classify failures without catching bare Exception first.
"""


class GenerationError(Exception):
    """Base class for scheduler errors."""
    code = 'generation_error'


class QuotaExceededError(GenerationError):
    """A trend API call was recorded while a daily or monthly ceiling was already met."""
    code = 'quota_exceeded'


class InvalidTransitionError(GenerationError):
    code = 'invalid_transition'

    def __init__(self, job_id, current, target, reason=None):
        self.job_id = job_id
        self.current = current
        self.target = target
        message = f"Job {job_id}: illegal transition {current} -> {target}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class PlanInvariantError(GenerationError):
    """A proposed daily plan had duplicate trends or non-contiguous positions."""
    code = 'plan_invariant_violation'


class PersistenceUnavailableError(GenerationError):
    """The durable store could not be reached after all retries."""
    code = 'persistence_unavailable'


class ContentGenerationError(GenerationError):
    code = 'content_generation_failed'


class TrendSourceError(GenerationError):
    code = 'trend_source_failed'


class UnknownJobError(GenerationError):
    code = 'unknown_job'


class PlanConflictError(GenerationError):
    """A job changed status while a plan refresh was being written."""
    code = 'plan_conflict'
