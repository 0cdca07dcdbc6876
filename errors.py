"""Error taxonomy shared by the conversation engine and the HTTP layer."""


class EngineError(Exception):
    """Base class for errors raised while processing an attempt."""

    status_code = 500


class TransientError(EngineError):
    """Infrastructure failure; the caller may retry and the attempt is unchanged."""

    status_code = 503


class StoreUnavailableError(TransientError):
    """The relational store could not be reached or was locked."""


class EvaluatorUnavailableError(TransientError):
    """The external evaluation service failed or timed out."""


class EmbeddingServiceError(TransientError):
    """The embedding service failed while grounding a query."""


class EvaluatorReplyError(EngineError):
    """The evaluator answered with a reply that does not match the contract.

    Recovered locally by substituting the safe incomplete fallback.
    """


class SkillLevelIntegrityError(EngineError):
    """The evaluator referenced a skill/level pair that is not in the level table."""

    status_code = 502


class NotFoundError(EngineError):
    status_code = 404


class AttemptNotFoundError(NotFoundError):
    pass


class AssessmentNotFoundError(NotFoundError):
    pass


class AttemptCompletedError(EngineError):
    """A message was submitted to an attempt that is already completed."""

    status_code = 409


class AssessmentMismatchError(EngineError):
    """The submitted assessment reference does not match the attempt."""

    status_code = 400


class ConfigurationError(EngineError):
    """Assessment configuration violates an invariant (e.g. no standard level)."""

    status_code = 500


class InvalidMessageError(EngineError):
    """The submitted student message is empty."""

    status_code = 400


class NothingToRetryError(EngineError):
    """Retry was requested but the last message already has an answer."""

    status_code = 409
