"""Application-level exception types.

Convention:
- ``CheckpointError`` subclasses: domain failures of the versioning core.
  Each carries the HTTP status the API maps it to:

  * ``NotFoundError`` (404): absent store, checkpoint or file.
  * ``ConflictError`` (409): lost a version allocation race. Retryable.
  * ``PreconditionFailedError`` (412): restore target missing on disk, or the
    live tree is required but absent.
  * ``IOFailureError`` (500): underlying hash, copy or materialize error.
  * ``VerificationFailureError`` (500): post-copy count/size mismatch. The
    operation that raised it has already rolled back.

- ``ValueError``: for validation errors that are safe to forward to clients.
"""

from __future__ import annotations


class CheckpointError(Exception):
    """Base class for versioning core failures."""

    status_code = 500
    expose_detail = True


class NotFoundError(CheckpointError):
    """Raised when a store, checkpoint or file does not exist."""

    status_code = 404


class ConflictError(CheckpointError):
    """Raised when a concurrent writer claimed the same version first."""

    status_code = 409


class PreconditionFailedError(CheckpointError):
    """Raised when on-disk state required by an operation is missing."""

    status_code = 412


class IOFailureError(CheckpointError):
    """Raised when hashing, copying or materializing a tree fails."""

    expose_detail = False


class VerificationFailureError(CheckpointError):
    """Raised when a copied tree does not match its source."""

    expose_detail = False

