"""Domain errors shared by the services and mapped to HTTP statuses by the API."""


class NotFoundError(LookupError):
    """Requested record does not exist (404)."""


class ConflictError(Exception):
    """Record would violate a uniqueness rule (409)."""


class StateTransitionError(ValueError):
    """Operation is not allowed in the record's current status (400)."""
