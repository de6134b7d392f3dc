"""Error taxonomy shared by the worker, the token service and the HTTP layer."""


class ArchiveServiceError(Exception):
    pass


class ValidationError(ArchiveServiceError):
    """Malformed or missing submission data. Never worth retrying."""


class InvalidTransitionError(ValidationError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Illegal status transition {current} -> {target}")
        self.current = current
        self.target = target


class NotFoundError(ArchiveServiceError):
    pass


class ExpiredError(ArchiveServiceError):
    pass


class GoneError(ArchiveServiceError):
    """The submission was deleted by an admin."""


class ConflictError(ArchiveServiceError):
    pass


class TransientInfraError(ArchiveServiceError):
    """A store, queue or relay call failed. Callers re-raise so redelivery applies."""


class ServiceUnavailable(TransientInfraError):
    pass
