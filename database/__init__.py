from .manager import DatabaseManager
from .errors import (
    GroomingError, NotFoundError, ValidationFailure, PackageNotUsableError,
    PersistenceFailure
)

__all__ = [
    "DatabaseManager",
    "GroomingError",
    "NotFoundError",
    "ValidationFailure",
    "PackageNotUsableError",
    "PersistenceFailure",
]
