"""
Static policy tables for event types and severities.

Pure lookups, no state. Retention is decided by the event type's
category; personal-data eligibility is decided per type.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from auditchain.db.models.audit import EventCategory, EventType, Severity

CATEGORY_RETENTION_DAYS: dict[EventCategory, int] = {
    EventCategory.COMPLIANCE: 2555,  # 7 years
    EventCategory.PERSONAL_DATA: 2555,
    EventCategory.FINANCIAL: 1825,  # 5 years
    EventCategory.AUTHENTICATION: 1095,  # 3 years
    EventCategory.AUTHORIZATION: 1095,
    EventCategory.SECURITY: 2190,  # 6 years
    EventCategory.ERROR: 365,
    EventCategory.COMMUNICATION: 730,
    EventCategory.SYSTEM: 730,
}


@dataclass(frozen=True)
class EventTypePolicy:
    category: EventCategory
    is_critical: bool
    requires_personal_data: bool
    description: str

    @property
    def retention_days(self) -> int:
        return CATEGORY_RETENTION_DAYS[self.category]


@dataclass(frozen=True)
class SeverityProfile:
    level: int
    notification_channel: str
    sla_minutes: int | None
    processing_priority: int
    baseline_retention_days: int

    @property
    def requires_notification(self) -> bool:
        return self.notification_channel != "LOG"


_AUTHN = EventCategory.AUTHENTICATION
_AUTHZ = EventCategory.AUTHORIZATION
_PII = EventCategory.PERSONAL_DATA
_FIN = EventCategory.FINANCIAL
_COMM = EventCategory.COMMUNICATION
_COMP = EventCategory.COMPLIANCE
_SEC = EventCategory.SECURITY
_ERR = EventCategory.ERROR
_SYS = EventCategory.SYSTEM

EVENT_TYPE_POLICIES: dict[EventType, EventTypePolicy] = {
    EventType.LOGIN_SUCCESS: EventTypePolicy(_AUTHN, False, False, "Successful login"),
    EventType.LOGIN_FAILURE: EventTypePolicy(_AUTHN, True, False, "Failed login attempt"),
    EventType.LOGIN_BLOCKED: EventTypePolicy(_AUTHN, True, False, "Login blocked after attempts"),
    EventType.LOGOUT: EventTypePolicy(_AUTHN, False, False, "Logout"),
    EventType.PASSWORD_CHANGED: EventTypePolicy(_AUTHN, True, False, "Password changed"),
    EventType.PASSWORD_RESET: EventTypePolicy(_AUTHN, True, False, "Password reset requested"),
    EventType.TOKEN_CREATED: EventTypePolicy(_AUTHN, False, False, "Access token issued"),
    EventType.TOKEN_REFRESHED: EventTypePolicy(_AUTHN, False, False, "Access token refreshed"),
    EventType.TOKEN_REVOKED: EventTypePolicy(_AUTHN, True, False, "Access token revoked"),
    EventType.ACCESS_DENIED: EventTypePolicy(_AUTHZ, True, False, "Access to resource denied"),
    EventType.PERMISSION_GRANTED: EventTypePolicy(_AUTHZ, True, False, "Permission granted"),
    EventType.PERMISSION_REVOKED: EventTypePolicy(_AUTHZ, True, False, "Permission revoked"),
    EventType.ROLE_ASSIGNED: EventTypePolicy(_AUTHZ, True, False, "Role assigned to user"),
    EventType.ROLE_REMOVED: EventTypePolicy(_AUTHZ, True, False, "Role removed from user"),
    EventType.DATA_CREATED: EventTypePolicy(_PII, True, True, "Personal data created"),
    EventType.DATA_ACCESSED: EventTypePolicy(_PII, True, True, "Personal data accessed"),
    EventType.DATA_MODIFIED: EventTypePolicy(_PII, True, True, "Personal data modified"),
    EventType.DATA_DELETED: EventTypePolicy(_PII, True, True, "Personal data deleted"),
    EventType.DATA_EXPORTED: EventTypePolicy(_PII, True, True, "Personal data exported"),
    EventType.DATA_ANONYMIZED: EventTypePolicy(_PII, True, True, "Personal data anonymized"),
    EventType.USER_CREATED: EventTypePolicy(_SYS, True, True, "User created"),
    EventType.USER_UPDATED: EventTypePolicy(_SYS, True, True, "User updated"),
    EventType.USER_DEACTIVATED: EventTypePolicy(_SYS, True, False, "User deactivated"),
    EventType.USER_REACTIVATED: EventTypePolicy(_SYS, True, False, "User reactivated"),
    EventType.TRANSACTION_CREATED: EventTypePolicy(_FIN, True, False, "Transaction created"),
    EventType.TRANSACTION_APPROVED: EventTypePolicy(_FIN, True, False, "Transaction approved"),
    EventType.TRANSACTION_REJECTED: EventTypePolicy(_FIN, True, False, "Transaction rejected"),
    EventType.PAYMENT_PROCESSED: EventTypePolicy(_FIN, True, False, "Payment processed"),
    EventType.BALANCE_CHANGED: EventTypePolicy(_FIN, True, False, "Account balance changed"),
    EventType.MESSAGE_SENT: EventTypePolicy(_COMM, False, False, "Message sent"),
    EventType.MESSAGE_EDITED: EventTypePolicy(_COMM, False, False, "Message edited"),
    EventType.MESSAGE_DELETED: EventTypePolicy(_COMM, False, False, "Message deleted"),
    EventType.NOTIFICATION_SENT: EventTypePolicy(_COMM, False, False, "Notification sent"),
    EventType.EMAIL_SENT: EventTypePolicy(_COMM, False, False, "Email sent"),
    EventType.CONFIG_CHANGED: EventTypePolicy(_SYS, True, False, "System configuration changed"),
    EventType.FEATURE_FLAG_TOGGLED: EventTypePolicy(_SYS, True, False, "Feature flag toggled"),
    EventType.CACHE_CLEARED: EventTypePolicy(_SYS, False, False, "Cache cleared"),
    EventType.BACKUP_COMPLETED: EventTypePolicy(_SYS, False, False, "Backup completed"),
    EventType.INTRUSION_ATTEMPT: EventTypePolicy(_SEC, True, False, "Intrusion attempt detected"),
    EventType.KEY_ROTATED: EventTypePolicy(_SEC, True, False, "Cryptographic key rotated"),
    EventType.CERTIFICATE_RENEWED: EventTypePolicy(_SEC, False, False, "Certificate renewed"),
    EventType.CONSENT_GIVEN: EventTypePolicy(_COMP, True, True, "Consent given"),
    EventType.CONSENT_WITHDRAWN: EventTypePolicy(_COMP, True, True, "Consent withdrawn"),
    EventType.RIGHT_TO_BE_FORGOTTEN: EventTypePolicy(_COMP, True, True, "Erasure requested"),
    EventType.DATA_PORTABILITY: EventTypePolicy(_COMP, True, True, "Data portability requested"),
    EventType.APPLICATION_ERROR: EventTypePolicy(_ERR, True, False, "Application error"),
    EventType.DATABASE_ERROR: EventTypePolicy(_ERR, True, False, "Database error"),
    EventType.INTEGRATION_ERROR: EventTypePolicy(_ERR, True, False, "External integration error"),
    EventType.AUTHENTICATION_ERROR: EventTypePolicy(_ERR, True, False, "Authentication error"),
    EventType.RATE_LIMIT_EXCEEDED: EventTypePolicy(_SYS, True, False, "Rate limit exceeded"),
    EventType.RESOURCE_UNAVAILABLE: EventTypePolicy(_SYS, True, False, "Resource unavailable"),
    EventType.ALERT_TRIGGERED: EventTypePolicy(_SYS, True, False, "Monitoring alert triggered"),
    EventType.CUSTOM: EventTypePolicy(_SYS, False, False, "Custom event"),
}

SEVERITY_PROFILES: dict[Severity, SeverityProfile] = {
    Severity.DEBUG: SeverityProfile(0, "LOG", None, 5, 30),
    Severity.INFO: SeverityProfile(1, "LOG", None, 4, 180),
    Severity.WARN: SeverityProfile(2, "EMAIL", 240, 3, 365),
    Severity.ERROR: SeverityProfile(3, "SLACK", 60, 2, 1095),
    Severity.CRITICAL: SeverityProfile(4, "SMS", 15, 1, 2555),
}


def policy_for(event_type: EventType) -> EventTypePolicy:
    return EVENT_TYPE_POLICIES[event_type]


def severity_profile(severity: Severity) -> SeverityProfile:
    return SEVERITY_PROFILES[severity]


def is_more_severe(a: Severity, b: Severity) -> bool:
    return SEVERITY_PROFILES[a].level > SEVERITY_PROFILES[b].level


def retention_deadline(event_type: EventType, now: datetime) -> datetime:
    """Timestamp until which an event of this type must be kept."""
    return now + timedelta(days=policy_for(event_type).retention_days)
