"""
Structured logging for the discovery engine.
Every component logs through the module-level `logger` so operations share one format.
"""

import logging
from typing import Any, Dict, List


class StructuredLogger:
    """Structured logger for feed serving, background jobs and moderation signals."""

    def __init__(self, name: str = "discovery"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_feed_served(self, viewer_id: str, mode: str, items: int, generation: int, status: str = "success", details: Dict[str, Any] = None):
        """Log a served feed page."""
        log_details = {
            "viewer_id": viewer_id,
            "mode": mode,
            "items": items,
            "generation": generation
        }
        if details:
            log_details.update(details)

        self.log_operation("feed.served", status, log_details)

    def log_generation_published(self, snapshot_name: str, version: int, creators: int, details: Dict[str, Any] = None):
        """Log a snapshot generation swap."""
        log_details = {"snapshot": snapshot_name, "version": version, "creators": creators}
        if details:
            log_details.update(details)

        self.log_operation("snapshot.published", "success", log_details)

    def log_heartbeat_task(self, task_name: str, start_time: float, end_time: float, status: str = "success", details: Dict[str, Any] = None):
        """Log heartbeat task execution."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)
        elif status == "success":
            log_details["message"] = f"Heartbeat task '{task_name}' completed in {duration_ms}ms"
        elif status == "failed":
            log_details["message"] = f"Heartbeat task '{task_name}' failed after {duration_ms}ms"

        level = logging.INFO if status == "success" else logging.ERROR
        self.log_operation(f"heartbeat.{task_name}", status, log_details, level=level)

    def log_batch_result(self, cycle_id: str, batch_index: int, creators: int, status: str = "success", error: str = ""):
        """Log a refresh batch outcome."""
        log_details = {"cycle_id": cycle_id, "batch": batch_index, "creators": creators}
        if error:
            log_details["error"] = error[:200]

        level = logging.INFO if status == "success" else logging.WARNING
        self.log_operation("refresh.batch", status, log_details, level=level)

    def log_flag_transition(self, flag_id: str, creator_id: str, old_status: str, new_status: str, actor: str = "system", confidence: float = None):
        """Log a manipulation flag status change."""
        log_details = {
            "flag_id": flag_id,
            "creator_id": creator_id,
            "from": old_status,
            "to": new_status,
            "actor": actor
        }
        if confidence is not None:
            log_details["confidence"] = round(confidence, 4)

        self.log_operation("manipulation.flag", "transitioned", log_details)

    def log_detector_fail_open(self, creator_id: str, reason: str):
        """Log a detector outage that was treated as confidence 0."""
        log_details = {"creator_id": creator_id, "reason": reason[:200], "confidence": 0.0}
        self.log_operation("manipulation.fail_open", "degraded", log_details, level=logging.WARNING)

    def log_fairness_shortfall(self, viewer_id: str, required: int, qualified: int, filled: int):
        """Log a guaranteed-slot shortfall on page one."""
        log_details = {
            "viewer_id": viewer_id,
            "required": required,
            "qualified": qualified,
            "filled": filled
        }
        self.log_operation("fairness.shortfall", "degraded", log_details, level=logging.WARNING)

    def log_audit_report(self, audit_id: str, passed: bool, breaches: List[str], actions: List[str]):
        """Log a fairness audit outcome."""
        log_details = {
            "audit_id": audit_id,
            "breaches": breaches,
            "corrective_actions": actions
        }
        status = "pass" if passed else "fail"
        level = logging.INFO if passed else logging.WARNING
        self.log_operation("fairness.audit", status, log_details, level=level)

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


def sanitize_evidence(payload: Any, max_len: int = 100) -> Any:
    """Truncate long strings in moderation evidence before it is logged or forwarded."""
    if isinstance(payload, dict):
        return {k: sanitize_evidence(v, max_len) for k, v in payload.items()}
    elif isinstance(payload, str):
        return payload[:max_len] + "..." if len(payload) > max_len else payload
    elif isinstance(payload, list):
        return [sanitize_evidence(item, max_len) for item in payload]
    else:
        return payload
