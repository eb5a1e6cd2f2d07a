"""
Error handling for the Session Sync Client.

This module converts failures into structured errors, logs and audits them,
keeps a short history for diagnostics and runs registered recovery callbacks.
Session handles publish the returned error as a human-readable event.
"""

import asyncio
import logging
import sys
import traceback
from datetime import datetime
from typing import Optional, Dict, Any, Callable, List

from session_shared.exceptions import (
    SessionSyncError, ErrorCode, RecoveryAction, handle_exception
)
from session_shared.logging_config import log_structured_error, AuditLogger

logger = logging.getLogger(__name__)

MAX_ERROR_HISTORY = 100

RECOVERY_ACTION_TEXT = {
    RecoveryAction.RETRY: "Try the operation again",
    RecoveryAction.RETRY_WITH_BACKOFF: "Try again in a few moments",
    RecoveryAction.LOGIN_AGAIN: "Log in again",
    RecoveryAction.REFRESH_STATE: "Refresh the session state",
    RecoveryAction.WAIT_FOR_NEXT_TICK: "Wait for the next revalidation",
    RecoveryAction.USER_INTERVENTION: "Check your configuration",
    RecoveryAction.IGNORE: "No action needed",
}


class ClientErrorHandler:
    """
    Centralized error handling for session handles and the CLI.
    """

    def __init__(self, audit_logger: Optional[AuditLogger] = None):
        self._error_history: List[Dict[str, Any]] = []
        self._recovery_callbacks: Dict[RecoveryAction, Callable[[SessionSyncError], None]] = {}
        self._error_listeners: List[Callable[[SessionSyncError], None]] = []
        self._audit_logger = audit_logger or AuditLogger()

    def register_recovery_callback(self, action: RecoveryAction,
                                   callback: Callable[[SessionSyncError], None]):
        """Register a callback function for a specific recovery action."""
        self._recovery_callbacks[action] = callback
        logger.debug(f"Recovery callback registered for action: {action.value}")

    def add_error_listener(self, listener: Callable[[SessionSyncError], None]):
        self._error_listeners.append(listener)

    def handle_error(
        self,
        error: Exception,
        context: Optional[Dict[str, Any]] = None,
        default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR,
        owner_id: Optional[str] = None,
        level: int = logging.ERROR,
        auto_recover: bool = False
    ) -> SessionSyncError:
        """
        Handle an error with logging, auditing and optional recovery.

        Args:
            error: The error that occurred
            context: Additional context information
            default_error_code: Code used when the error is not already structured
            owner_id: Handle the error belongs to
            level: Log level for the structured error record
            auto_recover: Whether to run registered recovery callbacks

        Returns:
            The structured error
        """
        structured_error = handle_exception(error, context, default_error_code)

        self._add_to_error_history(structured_error, context, owner_id)
        log_structured_error(logger, structured_error, owner_id, level)
        self._audit_logger.log_error(structured_error, owner_id)

        for listener in list(self._error_listeners):
            try:
                listener(structured_error)
            except Exception as e:
                logger.error(f"Error in error listener: {e}")

        if auto_recover:
            self._attempt_recovery(structured_error)

        return structured_error

    def _add_to_error_history(self, error: SessionSyncError, context: Optional[Dict[str, Any]],
                              owner_id: Optional[str]):
        history_entry = {
            'timestamp': datetime.now().isoformat(),
            'owner_id': owner_id,
            'error_code': error.error_code.value,
            'message': error.message,
            'severity': error.severity.value,
            'context': error.context,
            'additional_context': context or {},
            'recovery_actions': [action.value for action in error.recovery_actions]
        }

        self._error_history.append(history_entry)

        if len(self._error_history) > MAX_ERROR_HISTORY:
            self._error_history = self._error_history[-MAX_ERROR_HISTORY:]

    def _attempt_recovery(self, error: SessionSyncError):
        for action in error.recovery_actions:
            callback = self._recovery_callbacks.get(action)
            if callback is None:
                continue

            logger.info(f"Attempting recovery action: {action.value}")
            try:
                callback(error)
                return
            except Exception as e:
                logger.error(f"Recovery action {action.value} failed: {e}")

    def format_user_message(self, error: SessionSyncError) -> str:
        """User facing text for an error, with the first suggested action."""
        message = error.user_message
        if error.recovery_actions:
            message += f" ({RECOVERY_ACTION_TEXT[error.recovery_actions[0]]})"
        return message

    def get_error_history(self) -> List[Dict[str, Any]]:
        """Get the error history for debugging."""
        return self._error_history.copy()

    def clear_error_history(self):
        self._error_history.clear()
        logger.info("Error history cleared")


def setup_client_error_handling(
    loop: Optional[asyncio.AbstractEventLoop] = None,
    error_handler: Optional[ClientErrorHandler] = None
) -> ClientErrorHandler:
    """
    Install process-wide handlers that route uncaught errors to one handler.

    Args:
        loop: Event loop whose exception handler should be replaced
        error_handler: Handler to use (a new one is created if omitted)

    Returns:
        Configured ClientErrorHandler instance
    """
    error_handler = error_handler or ClientErrorHandler()

    def handle_uncaught(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))
        error_handler.handle_error(
            exc_value,
            context={
                'exception_type': exc_type.__name__,
                'traceback': ''.join(traceback.format_tb(exc_traceback))
            },
            level=logging.CRITICAL
        )

    def handle_loop_exception(loop, context):
        exception = context.get('exception')
        if exception is None:
            logger.error(f"Event loop error: {context.get('message')}")
            return
        error_handler.handle_error(exception, context={'loop_message': context.get('message')})

    sys.excepthook = handle_uncaught
    if loop is not None:
        loop.set_exception_handler(handle_loop_exception)

    logger.info("Client error handling configured")
    return error_handler
