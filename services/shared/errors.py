"""
PinFlow error taxonomy.

The webhook handler maps these onto HTTP status codes, and the status code is
the only thing the payment processor's retry logic sees:

  SignatureVerificationError, MalformedEventError  -> 400 (never retried usefully)
  EventInFlightError                               -> 409 (redeliver later)
  UpstreamError, PartialApplicationError           -> 500 (redeliver)

Duplicate and ignorable events are not errors at all; they are acknowledged
outcomes of the reconciler.
"""
from __future__ import annotations


class PinFlowError(Exception):
    """Base class for every error raised on purpose by PinFlow code."""


class ConfigurationError(PinFlowError):
    """Required settings are missing or invalid. Raised at cold start."""


class SignatureVerificationError(PinFlowError):
    """The notification is not signed by the payment processor (or is stale)."""


class MalformedEventError(PinFlowError):
    """The notification body cannot be parsed into an event."""


class EventInFlightError(PinFlowError):
    """Another delivery of the same event holds the ledger claim."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(
            f"Event {event_id!r} is already being processed. Retry after a short delay."
        )


class UpstreamError(PinFlowError):
    """
    A collaborator call failed. `status_code` is the remote HTTP status
    (None for transport failures) and `detail` is the remote body, verbatim.
    """
    service = "upstream"

    def __init__(self, message: str, status_code: int | None = None, detail: str = ""):
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


class RecordStoreError(UpstreamError):
    service = "record-store"


class PaymentProcessorError(UpstreamError):
    service = "payment-processor"


class MailerError(UpstreamError):
    service = "mailer"


class PartialApplicationError(PinFlowError):
    """
    Stock was decremented for some lines but the event did not reach the
    order-created state. The write-ahead intent lets the next delivery skip
    the lines listed in `applied`; nothing is rolled back.
    """

    def __init__(self, event_id: str, applied: list[str], cause: BaseException):
        self.event_id = event_id
        self.applied = list(applied)
        self.cause = cause
        super().__init__(
            f"Event {event_id!r} failed after stock was applied for {self.applied}: {cause}"
        )
