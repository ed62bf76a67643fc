from __future__ import annotations


class AppError(Exception):
    pass


class BusinessError(AppError):
    pass


class ValidationError(BusinessError):
    pass


class InfraError(AppError):
    pass


class PersistenceError(InfraError):
    pass


class ExternalServiceError(InfraError):
    pass


class TransientExternalError(ExternalServiceError):
    pass


class InvalidTransitionError(AppError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Illegal sync transition {current} -> {target}")
        self.current = current
        self.target = target


class SyncInProgressError(BusinessError):
    pass


class SyncCancelledError(AppError):
    pass


class ConflictNotFoundError(BusinessError):
    pass
