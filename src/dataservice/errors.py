"""Failure kinds every backend resolves to, whatever its storage driver raised."""


class DataServiceError(Exception):
    kind = "error"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.context = context


class NotFound(DataServiceError):
    kind = "not_found"


class Conflict(DataServiceError):
    kind = "conflict"


class ValidationFailed(DataServiceError):
    kind = "validation_failed"


class StorageUnavailable(DataServiceError):
    kind = "storage_unavailable"


class PartialAggregateFailure(DataServiceError):
    """
    The primary write went through but a derived aggregate did not.

    Backends log it and move on; the aggregate is rebuilt from source rows on
    the next recompute of the same product or user.
    """

    kind = "partial_aggregate_failure"


class ImageUploadError(DataServiceError):
    KINDS = ("unauthorized", "not_found", "canceled", "other")

    def __init__(self, message: str = "", kind: str = "other", **context):
        self.kind = kind if kind in self.KINDS else "other"
        super().__init__(message, **context)
