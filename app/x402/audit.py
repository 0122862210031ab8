# app/x402/audit.py
"""
Audit logging for x402 payment events.

Events are kept for:
- Financial reconciliation (settlement failures are only ever reported here)
- Dispute resolution
- Debugging failures

Log format: JSON lines (one event per line)
Log location: GateConfig.audit_log_path. Without a path events are only
emitted through the logger.

Events logged:
- 402 returned (resource, amount, network, pay_to)
- Payment rejected (decode failure or facilitator verdict)
- Payment verified (payer, debug bypass used)
- Verification error (facilitator unreachable)
- Payment settled (transaction hash, network)
- Settlement failed (reason, stage)
- Settlement skipped (backend status)
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_REJECTED = "payment_rejected"
    PAYMENT_VERIFIED = "payment_verified"
    VERIFY_ERROR = "verify_error"
    PAYMENT_SETTLED = "payment_settled"
    SETTLEMENT_FAILED = "settlement_failed"
    SETTLEMENT_SKIPPED = "settlement_skipped"


def generate_request_id() -> str:
    """Generate a unique request ID for tracking."""
    return str(uuid.uuid4())[:8]


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create an audit event dictionary.

    Args:
        event_type: Type of event to log
        data: Event-specific data
        client_ip: Client IP address (if available)
        wallet_address: Payer wallet address (if available)
        request_id: Unique request identifier (if available)

    Returns:
        A structured event ready to be written to the audit log
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data
    }


class AuditLog:
    """
    Append-only record of payment events.

    Writing never raises: an audit failure is logged and the request
    carries on.
    """

    def __init__(self, log_path: Optional[str] = None, log: Optional[logging.Logger] = None):
        self.log_path = Path(log_path) if log_path else None
        self.logger = log or logger

    def record(
        self,
        event_type: AuditEventType,
        data: Dict[str, Any],
        client_ip: Optional[str] = None,
        wallet_address: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> Optional[str]:
        """
        Record an audit event.

        Returns:
            The request_id used for this event, or None if it could not be written
        """
        event = create_audit_event(
            event_type=event_type,
            data=data,
            client_ip=client_ip,
            wallet_address=wallet_address,
            request_id=request_id
        )

        if self.log_path is None:
            self.logger.debug(f"Audit event: {json.dumps(event)}")
            return event["request_id"]

        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a") as f:
                f.write(json.dumps(event) + "\n")

            self.logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
            return event["request_id"]

        except OSError as e:
            self.logger.error(f"Failed to write audit event: {e}")
            return None

    # Convenience methods for specific event types

    def payment_required_sent(
        self,
        client_ip: str,
        resource: str,
        max_amount_required: str,
        network: str,
        pay_to: str,
        request_id: Optional[str] = None
    ) -> Optional[str]:
        """Log a 402 Payment Required response event."""
        return self.record(
            AuditEventType.PAYMENT_REQUIRED_SENT,
            data={
                "resource": resource,
                "max_amount_required": max_amount_required,
                "network": network,
                "pay_to": pay_to,
            },
            client_ip=client_ip,
            request_id=request_id
        )

    def payment_rejected(
        self,
        client_ip: str,
        reason: str,
        stage: str,
        wallet_address: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> Optional[str]:
        """Log a rejected payment, either undecodable or judged invalid."""
        return self.record(
            AuditEventType.PAYMENT_REJECTED,
            data={"reason": reason, "stage": stage},
            client_ip=client_ip,
            wallet_address=wallet_address,
            request_id=request_id
        )

    def payment_verified(
        self,
        client_ip: str,
        payer: Optional[str],
        bypassed: bool = False,
        request_id: Optional[str] = None
    ) -> Optional[str]:
        return self.record(
            AuditEventType.PAYMENT_VERIFIED,
            data={"debug_bypass": bypassed},
            client_ip=client_ip,
            wallet_address=payer,
            request_id=request_id
        )

    def verify_error(
        self,
        client_ip: str,
        error_message: str,
        request_id: Optional[str] = None
    ) -> Optional[str]:
        return self.record(
            AuditEventType.VERIFY_ERROR,
            data={"error_message": error_message},
            client_ip=client_ip,
            request_id=request_id
        )

    def payment_settled(
        self,
        client_ip: str,
        payer: Optional[str],
        transaction_hash: str,
        network: str,
        request_id: Optional[str] = None
    ) -> Optional[str]:
        """Log a successful settlement."""
        return self.record(
            AuditEventType.PAYMENT_SETTLED,
            data={"transaction_hash": transaction_hash, "network": network},
            client_ip=client_ip,
            wallet_address=payer,
            request_id=request_id
        )

    def settlement_failed(
        self,
        client_ip: str,
        reason: str,
        stage: str,
        resource: str,
        payer: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> Optional[str]:
        """
        Log a settlement that did not go through after the response was served.

        These entries are the reconciliation backlog: service was rendered
        but no funds moved.
        """
        return self.record(
            AuditEventType.SETTLEMENT_FAILED,
            data={"reason": reason, "stage": stage, "resource": resource},
            client_ip=client_ip,
            wallet_address=payer,
            request_id=request_id
        )

    def settlement_skipped(
        self,
        client_ip: str,
        backend_status: int,
        payer: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> Optional[str]:
        return self.record(
            AuditEventType.SETTLEMENT_SKIPPED,
            data={"backend_status": backend_status},
            client_ip=client_ip,
            wallet_address=payer,
            request_id=request_id
        )

    def read_events(
        self,
        max_entries: Optional[int] = 100,
        event_type: Optional[AuditEventType] = None,
        client_ip: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Read entries from the audit log.

        Args:
            max_entries: Maximum number of entries to return (None for all)
            event_type: Filter by event type (optional)
            client_ip: Filter by client IP (optional)

        Returns:
            List of audit events (most recent first)
        """
        if self.log_path is None or not self.log_path.exists():
            return []

        events = []
        try:
            with open(self.log_path, "r") as f:
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
                    if client_ip and event.get("client_ip") != client_ip:
                        continue
                    events.append(event)
        except OSError as e:
            self.logger.error(f"Failed to read audit log: {e}")
            return []

        return list(reversed(events))[:max_entries]

    def stats(self) -> Dict[str, Any]:
        """
        Summarise the audit log.

        Returns:
            Dict with the total event count and counts per event type
        """
        events = self.read_events(max_entries=None)
        events_by_type: Dict[str, int] = {}
        for event in events:
            key = event.get("event_type", "unknown")
            events_by_type[key] = events_by_type.get(key, 0) + 1

        return {
            "total_events": len(events),
            "events_by_type": events_by_type,
            "log_path": str(self.log_path) if self.log_path else None,
            "log_exists": bool(self.log_path and self.log_path.exists()),
        }
