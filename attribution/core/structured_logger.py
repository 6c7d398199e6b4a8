"""
Structured log events for the referral workflow.

Every tracker transition, API call and store or signal operation that
matters for attribution support goes through log_event, so one context
can be followed end to end by its correlation_id. Fields:
- component   ("tracker", "client", "store", "signal", "worker")
- operation   ("track_click", "register_conversion", "retry_tick", ...)
- correlation_id (optional, the progress context id)
- outcome     ("success", "failed", "skipped", "deferred", "cleared")
- duration_ms (optional, omitted if None)
- reason      (optional, short and non-PII)

Wallet addresses are logged through mask_wallet only. Request payloads
and UTM values are never logged.
"""
from logging import Logger
from typing import Optional


def mask_wallet(address: Optional[str]) -> str:
    """Shorten a wallet address for logs: 0x1234...abcd"""
    if not address:
        return "none"
    if len(address) <= 12:
        return address
    return f"{address[:6]}...{address[-4:]}"


def log_event(
    logger: Logger,
    *,
    component: str,
    operation: str,
    correlation_id: Optional[str] = None,
    outcome: str,
    duration_ms: Optional[int] = None,
    reason: Optional[str] = None,
    level: str = "info",
    message: Optional[str] = None,
) -> None:
    """
    Emit structured log event.

    Args:
        logger: Logger instance
        component: Component name (e.g. "tracker", "client")
        operation: Operation name (e.g. "register_conversion")
        correlation_id: Progress context id (optional)
        outcome: Outcome (e.g. "success", "failed", "deferred")
        duration_ms: Duration in milliseconds (omitted if None)
        reason: Short non-PII explanation (optional)
        level: Log level ("info", "warning", "error", "critical", "debug")
        message: Optional override message (defaults to component/operation)
    """
    extra: dict = {
        "component": component,
        "operation": operation,
        "outcome": outcome,
    }
    if correlation_id is not None:
        extra["correlation_id"] = str(correlation_id)
    if duration_ms is not None:
        extra["duration_ms"] = duration_ms
    if reason is not None:
        extra["reason"] = reason

    msg = message or f"{component} {operation} outcome={outcome}"
    if reason is not None and message is None:
        msg = f"{msg} reason={reason}"
    log_method = getattr(logger, level.lower(), logger.info)
    log_method(msg, extra=extra)
