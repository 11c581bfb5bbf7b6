# app/x402/audit.py
"""
Audit logging for x402 payment handshakes.

Every handshake step that matters for reconciliation or dispute resolution
is written as one JSON object per line to X402_AUDIT_LOG_PATH:
- 402 returned (amount, network, resource)
- Verification result (valid/invalid, reason)
- Verification bypassed (facilitator reason, local acceptance detail)
- Settlement result (facilitator transaction or failure reason)
- Fallback broadcast (signature, confirmation state)
- Session issued
- Payment failed (stage, reason)
- Error (type, message)

Writing is best-effort: a failed write is logged and never fails the request.
Set X402_AUDIT_ENABLED=false to turn the trail off.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_VERIFIED = "payment_verified"
    VERIFICATION_BYPASSED = "verification_bypassed"
    PAYMENT_SETTLED = "payment_settled"
    FALLBACK_BROADCAST = "fallback_broadcast"
    SESSION_ISSUED = "session_issued"
    PAYMENT_FAILED = "payment_failed"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a short request ID for correlating events of one handshake."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    return Path(settings.X402_AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    payer: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """Build an audit event dictionary."""
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "payer": payer,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    payer: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an audit event to the audit log.

    Returns:
        The request_id used for this event, or None if auditing is disabled
        or the write failed
    """
    if not settings.X402_AUDIT_ENABLED:
        return None

    event = create_audit_event(
        event_type=event_type,
        data=data,
        client_ip=client_ip,
        payer=payer,
        request_id=request_id
    )

    try:
        log_path = get_audit_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(event) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except OSError as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


def log_payment_required_sent(
    client_ip: Optional[str],
    amount: str,
    network: str,
    resource: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REQUIRED_SENT,
        data={
            "amount": amount,
            "network": network,
            "resource": resource,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_verified(
    client_ip: Optional[str],
    payer: Optional[str],
    is_valid: bool,
    invalid_reason: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_VERIFIED,
        data={
            "is_valid": is_valid,
            "invalid_reason": invalid_reason,
        },
        client_ip=client_ip,
        payer=payer,
        request_id=request_id
    )


def log_verification_bypassed(
    client_ip: Optional[str],
    payer: Optional[str],
    facilitator_reason: str,
    policy: str,
    detail: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a payment accepted locally despite a facilitator objection."""
    return log_audit_event(
        event_type=AuditEventType.VERIFICATION_BYPASSED,
        data={
            "facilitator_reason": facilitator_reason,
            "policy": policy,
            "detail": detail,
        },
        client_ip=client_ip,
        payer=payer,
        request_id=request_id
    )


def log_payment_settled(
    client_ip: Optional[str],
    payer: Optional[str],
    transaction: Optional[str],
    network: str,
    success: bool,
    error_reason: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_SETTLED,
        data={
            "success": success,
            "transaction": transaction,
            "network": network,
            "error_reason": error_reason,
        },
        client_ip=client_ip,
        payer=payer,
        request_id=request_id
    )


def log_fallback_broadcast(
    client_ip: Optional[str],
    payer: Optional[str],
    signature: Optional[str],
    state: str,
    error: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.FALLBACK_BROADCAST,
        data={
            "signature": signature,
            "state": state,
            "error": error,
        },
        client_ip=client_ip,
        payer=payer,
        request_id=request_id
    )


def log_session_issued(
    client_ip: Optional[str],
    payer: Optional[str],
    transaction: Optional[str],
    confirmed: bool,
    request_id: Optional[str] = None
) -> Optional[str]:
    # The token itself is a credential and is not written to the log
    return log_audit_event(
        event_type=AuditEventType.SESSION_ISSUED,
        data={
            "transaction": transaction,
            "confirmed": confirmed,
        },
        client_ip=client_ip,
        payer=payer,
        request_id=request_id
    )


def log_payment_failed(
    client_ip: Optional[str],
    reason: str,
    stage: str,
    payer: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_FAILED,
        data={
            "reason": reason,
            "stage": stage,
        },
        client_ip=client_ip,
        payer=payer,
        request_id=request_id
    )


def log_error(
    client_ip: Optional[str],
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        event_type=AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        client_ip=client_ip,
        request_id=request_id
    )


def read_audit_log(
    max_entries: Optional[int] = 100,
    event_type: Optional[AuditEventType] = None,
    request_id: Optional[str] = None
) -> list:
    """
    Read entries from the audit log, most recent first.

    Args:
        max_entries: Maximum number of entries to return (None for all)
        event_type: Only return events of this type
        request_id: Only return events of this handshake
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    events = []
    try:
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event_type and event.get("event_type") != event_type.value:
                    continue
                if request_id and event.get("request_id") != request_id:
                    continue
                events.append(event)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    return list(reversed(events))[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """Event counts by type and the time range covered by the audit log."""
    log_path = get_audit_log_path()
    stats: Dict[str, Any] = {
        "total_events": 0,
        "events_by_type": {},
        "first_event": None,
        "last_event": None,
        "log_path": str(log_path),
        "log_exists": log_path.exists(),
    }
    if not stats["log_exists"]:
        return stats

    for event in reversed(read_audit_log(max_entries=None)):
        stats["total_events"] += 1
        event_type = event.get("event_type", "unknown")
        stats["events_by_type"][event_type] = stats["events_by_type"].get(event_type, 0) + 1
        timestamp = event.get("timestamp")
        if timestamp:
            if stats["first_event"] is None:
                stats["first_event"] = timestamp
            stats["last_event"] = timestamp

    return stats
