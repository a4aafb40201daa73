"""
Structured logging for credential, approval and deletion operations.
Secrets never reach the log stream: payloads pass through sanitize_payload().
"""

import logging
from typing import Any, Dict, List

SENSITIVE_FIELDS = ['secret', 'password', 'adminPassword', 'secretPlaintext', 'plaintext', 'pin']


class StructuredLogger:
    """Structured logger for step-up credential and workflow operations."""

    def __init__(self, name: str = "stepguard"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {sanitize_payload(details)}"

        self.logger.info(message)

    # Secondary credential
    def log_credential_event(self, event: str, credential_id: str = None, week_id: str = None,
                             status: str = "success", details: Dict[str, Any] = None):
        """Log credential issue/rotation/validation. Never pass the plaintext here."""
        log_details = {}
        if credential_id:
            log_details["credential_id"] = credential_id
        if week_id:
            log_details["week_id"] = week_id
        if details:
            log_details.update(details)

        self.log_operation(f"credential.{event}", status, log_details)

    def log_credential_usage(self, credential_id: str, user_id: str, action: str, target_id: str = None):
        """Log consumption of the secondary credential."""
        log_details = {
            "credential_id": credential_id,
            "user_id": user_id,
            "action": action
        }
        if target_id:
            log_details["target_id"] = target_id

        self.log_operation("credential.usage", "recorded", log_details)

    # Approval workflow
    def log_approval_request(self, request_id: str, request_type: str, requester: str):
        """Log approval request creation."""
        log_details = {
            "request_id": request_id,
            "request_type": request_type,
            "requester": requester
        }
        self.log_operation("approval.request_created", "pending", log_details)

    def log_approval_decision(self, request_id: str, decision: str, approver: str, reason: str = ""):
        """Log approval decision."""
        log_details = {
            "request_id": request_id,
            "decision": decision,
            "approver": approver,
            "reason": reason[:100] if reason else ""  # Limit reason length
        }
        status = "approved" if decision == "approved" else "rejected"
        self.log_operation("approval.decision", status, log_details)

    # Deletion workflow
    def log_deletion_event(self, event: str, item_type: str, item_id: str, actor: str,
                           status: str = "success", details: Dict[str, Any] = None):
        """Log soft-delete, queued deletion, resolution and restore events."""
        log_details = {
            "item_type": item_type,
            "item_id": item_id,
            "actor": actor
        }
        if details:
            log_details.update(details)

        self.log_operation(f"deletion.{event}", status, log_details)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def log_approval_request(request_id: str, request_type: str, requester: str):
    """Log approval request creation."""
    logger.log_approval_request(request_id, request_type, requester)


def log_approval_decision(request_id: str, decision: str, approver: str, reason: str = ""):
    """Log approval decision."""
    logger.log_approval_decision(request_id, decision, approver, reason)


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None, sensitive_fields: List[str] = None):
    """General audit event logging with privacy controls."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    log_details = identifiers.copy() if identifiers else {}

    if payload:
        sanitized_payload = {}
        for k, v in payload.items():
            if k not in sensitive_fields:
                # Truncate long values
                if isinstance(v, str) and len(v) > 100:
                    sanitized_payload[k] = v[:97] + "..."
                else:
                    sanitized_payload[k] = v
            else:
                sanitized_payload[k] = "[REDACTED]"
        log_details["payload"] = sanitized_payload

    # Determine operation type from event_type
    if event_type.startswith("approval"):
        operation = "approval"
    elif event_type.startswith("deletion"):
        operation = "deletion"
    elif event_type.startswith("credential"):
        operation = "credential"
    else:
        operation = event_type.replace(".", "_")

    logger.log_operation(operation, "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
