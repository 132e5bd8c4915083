"""
Error taxonomy.

Request-path errors carry the HTTP status they surface as. Background-job
errors carry a ``retriable`` flag read by the worker loop: retriable errors
go through the queue's backoff policy, the rest are parked immediately.
"""
from __future__ import annotations


class StorefrontError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class InvalidInput(StorefrontError):
    status_code = 400


class InvalidMediaTarget(InvalidInput):
    pass


class VariantUnavailable(StorefrontError):
    status_code = 400


class InsufficientStock(VariantUnavailable):
    pass


class NotFound(StorefrontError):
    status_code = 404


class NotAuthorized(StorefrontError):
    status_code = 403


class InvalidTransition(StorefrontError):
    status_code = 409


class Conflict(StorefrontError):
    status_code = 409


class JobError(StorefrontError):
    retriable = True


class SourceFileMissing(JobError):
    # The upload is gone for good; retrying cannot help
    retriable = False


class TranscodeFailure(JobError):
    pass


class UploadFailure(JobError):
    pass


class UnknownJobType(JobError):
    retriable = False
