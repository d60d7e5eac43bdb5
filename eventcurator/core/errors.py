from __future__ import annotations


class CuratorError(Exception):
    """Base error for eventcurator."""


class DatabaseError(CuratorError):
    """Database layer failure."""


class NotFoundError(CuratorError):
    """Resource missing, owned by another tenant, or soft-deleted."""

    def __init__(self, resource_type: str, resource_id: str) -> None:
        super().__init__(f"{resource_type} {resource_id} not found")
        self.resource_type = resource_type
        self.resource_id = resource_id


class InvalidTransitionError(CuratorError):
    """Status precondition not met or target status not reachable."""

    def __init__(self, resource_type: str, resource_id: str, current: str, target: str) -> None:
        super().__init__(
            f"{resource_type} {resource_id} cannot move from '{current}' to '{target}'"
        )
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.current = current
        self.target = target


class ConcurrencyConflictError(CuratorError):
    """Conditional update matched zero rows; re-read and retry."""

    def __init__(self, resource_type: str, resource_id: str, expected: object) -> None:
        super().__init__(
            f"{resource_type} {resource_id} was modified concurrently (expected {expected})"
        )
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.expected = expected


class ValidationError(CuratorError):
    """Malformed input such as an incomplete experiment configuration."""


class UnknownBudgetDimensionError(CuratorError):
    """Budget consumption references a (platform, dimension) with no ledger row."""

    def __init__(self, platform: str, dimension: str) -> None:
        super().__init__(
            f"budget entry not found for platform='{platform}', dimension='{dimension}'"
        )
        self.platform = platform
        self.dimension = dimension


class BlobStorageError(CuratorError):
    """Blob store read/write failure."""


class BlobNotFoundError(BlobStorageError):
    """No blob stored at the requested path."""


class BlobExistsError(BlobStorageError):
    """Refused to overwrite an immutable blob path."""
