from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from storefront.logging import get_logger
from storefront.storage.common import generate_uuid
from storefront.storage.models import AuditEvent

logger = get_logger(__name__)


class AuditAction(str, Enum):
    SIGNUP = "signup"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGIN_BLOCKED = "login_blocked"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    LOGOUT = "logout"
    EMAIL_VERIFIED = "email_verified"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET = "password_reset"
    PASSWORD_CHANGED = "password_changed"
    TWO_FACTOR_SETUP = "two_factor_setup"
    TWO_FACTOR_ENABLED = "two_factor_enabled"
    TWO_FACTOR_DISABLED = "two_factor_disabled"
    BACKUP_CODES_REGENERATED = "backup_codes_regenerated"
    BACKUP_CODE_USED = "backup_code_used"
    ROLE_CHANGED = "role_changed"
    ACCOUNT_DELETED = "account_deleted"
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"
    ORDER_CREATED = "order_created"
    ORDER_RECONCILIATION_FAILED = "order_reconciliation_failed"
    ORDER_STATUS_CHANGED = "order_status_changed"
    ORDER_CANCELLED = "order_cancelled"


class AuditResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class AuditSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditSink:
    """Fire-and-forget recorder for security events.

    ``record`` writes to the store and emits an ``audit_event`` log line.
    Storage failures are logged and swallowed so auditing can never fail the
    request that produced the event.
    """

    def __init__(self, store: Any) -> None:
        self.store = store

    def record(
        self,
        action: AuditAction,
        account_id: Optional[str] = None,
        resource: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        result: AuditResult = AuditResult.SUCCESS,
        metadata: Optional[Dict[str, Any]] = None,
        severity: AuditSeverity = AuditSeverity.LOW,
    ) -> Optional[AuditEvent]:
        event = AuditEvent(
            id=generate_uuid(),
            action=AuditAction(action).value,
            result=AuditResult(result).value,
            severity=AuditSeverity(severity).value,
            account_id=account_id,
            resource=resource,
            ip=ip,
            user_agent=user_agent,
            metadata=dict(metadata or {}),
        )
        log_fn = (
            logger.warning
            if event.severity in {AuditSeverity.HIGH.value, AuditSeverity.CRITICAL.value}
            else logger.info
        )
        log_fn(
            "audit_event",
            action=event.action,
            result=event.result,
            severity=event.severity,
            account_id=account_id,
            resource=resource,
        )
        try:
            return self.store.record_audit_event(event)
        except Exception as exc:
            logger.warning(
                "audit_record_failed",
                action=event.action,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
