"""Error taxonomy for the credit ledger.

Error code ranges:
  1xxx: Credits (user-correctable)
  2xxx: Configuration
  3xxx: Store / infrastructure (retryable)
  4xxx: Webhooks / payment provider
"""

from __future__ import annotations


class CreditLedgerError(Exception):
    """Base ledger error."""

    def __init__(
        self,
        code: int,
        message: str,
        http_status: int = 500,
    ) -> None:
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(message)


# --- 1xxx: Credits ---

class InsufficientCredits(CreditLedgerError):
    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(
            1001,
            f"Insufficient credits: required {required}, available {available}",
            402,
        )


# --- 2xxx: Configuration ---

class UnknownOperation(CreditLedgerError):
    def __init__(self, app_key: str, operation: str) -> None:
        self.app_key = app_key
        self.operation = operation
        super().__init__(2001, f"Unknown operation: {app_key}/{operation}", 500)


# --- 3xxx: Store ---

class StoreUnavailable(CreditLedgerError):
    def __init__(self, message: str = "Ledger store unavailable") -> None:
        super().__init__(3001, message, 503)


class ConcurrentUpdateError(StoreUnavailable):
    """The account row changed between read and conditional write."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"Concurrent update on credit account {user_id}")
        self.code = 3002


# --- 4xxx: Webhooks / provider ---

class InvalidSignature(CreditLedgerError):
    def __init__(self, reason: str = "Invalid signature") -> None:
        super().__init__(4001, reason, 400)


class WebhookHandlerError(CreditLedgerError):
    def __init__(self, event_id: str, event_type: str) -> None:
        self.event_id = event_id
        self.event_type = event_type
        super().__init__(4002, f"Webhook handler error for {event_type} ({event_id})", 500)


class PaymentProviderError(CreditLedgerError):
    def __init__(self, message: str) -> None:
        super().__init__(4003, message, 502)
