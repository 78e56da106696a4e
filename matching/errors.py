"""Typed error kinds raised by the matching engine.

Every error carries a ``kind`` string so callers (and the HTTP layer) can branch
on it without importing the class hierarchy.
"""


class EngineError(Exception):
    kind = "EngineError"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.context = context

    def to_dict(self) -> dict:
        return {"kind": self.kind, "detail": self.message, **self.context}


class NotFound(EngineError):
    kind = "NotFound"


class Conflict(EngineError):
    """The stored version no longer matches the version the caller read."""

    kind = "Conflict"


class AlreadyClaimed(EngineError):
    kind = "AlreadyClaimed"


class RequestAlreadyFulfilled(EngineError):
    kind = "RequestAlreadyFulfilled"


class InvalidTransition(EngineError):
    kind = "InvalidTransition"


class ValidationError(EngineError):
    kind = "ValidationError"

    def __init__(self, message: str = "", errors=None, **context):
        super().__init__(message, **context)
        self.errors = errors or []

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.errors:
            data["errors"] = self.errors
        return data


class Forbidden(EngineError):
    kind = "Forbidden"


class StoreUnavailable(EngineError):
    kind = "StoreUnavailable"


class PartialFulfillmentConflict(EngineError):
    """The claim committed but the request's fulfilled flag could not be set.

    Returned as a warning on the claim result, not raised.
    """

    kind = "PartialFulfillmentConflict"


class PartialCompletionConflict(EngineError):
    """The donation is completed but its match could not be updated."""

    kind = "PartialCompletionConflict"


class PartialCancellationConflict(EngineError):
    """The donation was released but its match could not be cancelled."""

    kind = "PartialCancellationConflict"


class OracleError(EngineError):
    kind = "OracleError"
