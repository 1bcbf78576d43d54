from __future__ import annotations


class ReconcileError(Exception):
    """Base class for errors raised while reconciling a shoot."""


class RetryableError(ReconcileError):
    """Transient failure; the request is requeued with backoff."""


class QuotaStatusUnknownError(RetryableError):
    """A ResourceQuota restricts the resource but its status is not yet observed."""


class ValidationError(ReconcileError):
    """Invalid input that cannot succeed without an external change.

    Requests failing with this error are not requeued with backoff; only the
    periodic resync or a watch event picks them up again.
    """


class TrustAnchorError(ValidationError):
    """The cluster certificate authority is present but malformed."""


class CaNotProvisionedError(Exception):
    """The ShootState does not carry a certificate authority yet."""


class AdmissionContractError(RuntimeError):
    """An admission ticket was released without a matching grant."""


class NotFound(Exception):
    """The requested object does not exist in the API server."""
