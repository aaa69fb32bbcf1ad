from typing import Optional, Dict, Any


class CreditlineException(Exception):
    """Base exception for all Creditline errors."""

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class ValidationError(CreditlineException):
    """Raised when campaign or allocation input is malformed. Nothing is mutated."""

    def __init__(self, message: str, code: str = "validation_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=400, details=details)


class NotFoundError(CreditlineException):
    """Raised when a tenant, entity, campaign or payment is absent."""

    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=404, details=details)


class EntityNotFoundError(NotFoundError):
    """Raised when an entity does not resolve for the tenant."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="entity_not_found", details=details)


class CampaignNotFoundError(NotFoundError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="campaign_not_found", details=details)


class NegativeBalanceError(CreditlineException):
    """Raised when a consumption debit would take a balance below zero."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="insufficient_credits", status_code=409, details=details)


class LedgerConflictError(CreditlineException):
    """Raised when a concurrent writer changed the balance row mid-mutation."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="ledger_conflict", status_code=409, details=details)


class AlreadyProcessedError(CreditlineException):
    """Duplicate webhook or idempotency hit. Reported as skipped, never as a failure."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="already_processed", status_code=200, details=details)


class GatewayError(CreditlineException):
    """Raised when the payment gateway rejects a call or a webhook cannot be trusted."""

    def __init__(
        self,
        message: str,
        code: str = "gateway_error",
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=status_code, details=details)


class SignatureError(GatewayError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="invalid_signature", status_code=401, details=details)


class GatewayConfigurationError(GatewayError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="gateway_misconfigured", status_code=500, details=details)


class ReconciliationDriftError(CreditlineException):
    """Raised when the fallback lookup chain cannot find the owning subscription."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="reconciliation_drift", status_code=409, details=details)


class OrphanRecordError(CreditlineException):
    """Raised when the auditor finds ledger rows that no longer belong to a live entity."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="orphan_records", status_code=409, details=details)


class InvalidTransitionError(CreditlineException):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="invalid_transition", status_code=409, details=details)


class ConfigurationError(CreditlineException):
    """Raised when application configuration is invalid or missing."""

    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)
