from .base import BaseService
from .errors import (
    AlreadyAssignedError,
    DependencyMissingError,
    DispatchRolledBackError,
    ExternalCommandFailedError,
    IoFailedError,
    PreconditionFailedError,
    ServiceFailure,
    UnexpectedStateError,
    ValidationFailedError,
)

__all__ = [
    "AlreadyAssignedError",
    "BaseService",
    "DependencyMissingError",
    "DispatchRolledBackError",
    "ExternalCommandFailedError",
    "IoFailedError",
    "PreconditionFailedError",
    "ServiceFailure",
    "UnexpectedStateError",
    "ValidationFailedError",
]
