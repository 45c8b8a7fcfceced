"""
Entitlement error hierarchy.

Provides:
- EntitlementError: base for all entitlement failures
- MalformedEventError: lifecycle event failed validation (never retried)
- AlreadyEntitledError / TrialAlreadyConsumedError: trial start rejected
- SubscriptionIdentityMismatchError: event targets a different subscription
- AccountNotFoundError / SubscriptionNotFoundError: nothing stored for the account
- InvalidIdentityTokenError: sign-in token failed verification
- StoreError / VersionConflictError / StoreUnavailableError: record store failures

Every error carries a machine-readable error_code and the HTTP status the API
layer maps it to.
"""

from typing import Any, Optional


class EntitlementError(Exception):
    """Base exception for entitlement-related failures."""

    error_code = "entitlement_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details,
            }
        }


class MalformedEventError(EntitlementError):
    """Raised when a lifecycle event is missing required fields or is invalid."""

    error_code = "malformed_event"
    status_code = 400

    def __init__(self, message: str, fields: Optional[list[str]] = None):
        self.fields = list(fields or [])
        super().__init__(message, {"fields": self.fields} if self.fields else None)


class AlreadyEntitledError(EntitlementError):
    """Raised when a trial is requested while access is already granted."""

    error_code = "already_entitled"
    status_code = 409

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} already has access")


class TrialAlreadyConsumedError(EntitlementError):
    """Raised when the account's single trial was already started."""

    error_code = "trial_consumed"
    status_code = 409

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Trial already used for account {account_id}")


class SubscriptionIdentityMismatchError(EntitlementError):
    """Raised when an event references a subscription other than the bound one."""

    error_code = "subscription_identity_mismatch"
    status_code = 422

    def __init__(self, account_id: str, bound_subscription_id: str, event_subscription_id: str):
        self.account_id = account_id
        self.bound_subscription_id = bound_subscription_id
        self.event_subscription_id = event_subscription_id
        super().__init__(
            f"Account {account_id} is bound to subscription {bound_subscription_id}, "
            f"event references {event_subscription_id}",
            {"account_id": account_id, "external_subscription_id": event_subscription_id},
        )


class AccountNotFoundError(EntitlementError):
    error_code = "account_not_found"
    status_code = 404

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class SubscriptionNotFoundError(EntitlementError):
    error_code = "subscription_not_found"
    status_code = 404

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"No subscription bound to account {account_id}")


class InvalidIdentityTokenError(EntitlementError):
    """Raised when the identity token is missing, expired or fails verification."""

    error_code = "invalid_token"
    status_code = 401

    def __init__(self, detail: str = "Invalid identity token"):
        super().__init__(detail)


class StoreError(EntitlementError):
    """Base exception for record store errors."""

    error_code = "store_error"


class VersionConflictError(StoreError):
    """Compare-and-swap lost: the stored version differs from the expected one."""

    error_code = "version_conflict"
    status_code = 409

    def __init__(self, account_id: str, expected_version: Optional[int], actual_version: Optional[int]):
        self.account_id = account_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict for {account_id}: expected {expected_version}, found {actual_version}"
        )


class StoreUnavailableError(StoreError):
    """Store timed out or could not be reached. Safe to retry."""

    error_code = "store_unavailable"
    status_code = 503

    def __init__(self, message: str = "Entitlement store unavailable", cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)
