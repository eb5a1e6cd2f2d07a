"""
Exception hierarchy for the Session Sync Client.

This module defines structured exceptions with error codes, context information,
and recovery suggestions for consistent error handling across handles,
schedulers and collaborators.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(Enum):
    """Standardized error codes for the Session Sync Client."""

    # Authentication flow errors (1000-1099)
    AUTH_FLOW_FAILED = "AUTH_1001"
    AUTH_FLOW_IN_PROGRESS = "AUTH_1002"
    AUTH_LOGOUT_FAILED = "AUTH_1003"
    AUTH_TOKEN_EXPIRED = "AUTH_1004"
    AUTH_INVALID_TOKEN = "AUTH_1005"
    AUTH_NOT_AUTHENTICATED = "AUTH_1006"

    # Network and communication errors (2000-2099)
    NETWORK_CONNECTION_FAILED = "NETWORK_2001"
    NETWORK_TIMEOUT = "NETWORK_2002"
    NETWORK_SERVER_ERROR = "NETWORK_2003"
    NETWORK_UNEXPECTED_RESPONSE = "NETWORK_2004"

    # Claim errors (3000-3099)
    CLAIM_NOT_FOUND = "CLAIM_3001"
    CLAIM_TYPE_MISMATCH = "CLAIM_3002"

    # Revalidation errors (4000-4099)
    REVALIDATION_FAILED = "REVALIDATION_4001"
    REVALIDATION_PROFILE_UNAVAILABLE = "REVALIDATION_4002"

    # Scheduler errors (5000-5099)
    SCHEDULER_ALREADY_RUNNING = "SCHEDULER_5001"
    SCHEDULER_NOT_RUNNING = "SCHEDULER_5002"

    # Credential store errors (6000-6099)
    STORE_READ_FAILED = "STORE_6001"
    STORE_WRITE_FAILED = "STORE_6002"
    STORE_CORRUPTED = "STORE_6003"

    # Handle errors (7000-7099)
    HANDLE_OWNER_IN_USE = "HANDLE_7001"

    # Configuration errors (8000-8099)
    CONFIG_FILE_NOT_FOUND = "CONFIG_8001"
    CONFIG_INVALID_FORMAT = "CONFIG_8002"
    CONFIG_INVALID_VALUE = "CONFIG_8003"

    # Internal errors (9000-9099)
    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_9001"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    LOGIN_AGAIN = "login_again"
    REFRESH_STATE = "refresh_state"
    WAIT_FOR_NEXT_TICK = "wait_for_next_tick"
    USER_INTERVENTION = "user_intervention"
    IGNORE = "ignore"


class SessionSyncError(Exception):
    """
    Base exception class for all Session Sync Client errors.

    Provides structured error information including error codes, context,
    and recovery suggestions so that every failure can be reported through
    a human-readable event.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = dict(context or {})
        self.recovery_actions = recovery_actions or []
        self.cause = cause
        self.user_message = user_message or message
        self.timestamp = datetime.now()

        if cause:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for serialization."""
        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'user_message': self.user_message,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': {
                    'type': self.context.get('cause_type'),
                    'message': self.context.get('cause_message')
                } if self.cause else None
            }
        }


class AuthFlowError(SessionSyncError):
    """Interactive login or logout failed; session state is left unchanged."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.AUTH_FLOW_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=kwargs.pop('severity', ErrorSeverity.HIGH),
            recovery_actions=kwargs.pop('recovery_actions', [RecoveryAction.LOGIN_AGAIN]),
            **kwargs
        )


class AuthenticationError(SessionSyncError):
    """The remote side rejected the current access token."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.AUTH_INVALID_TOKEN, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.LOGIN_AGAIN],
            **kwargs
        )


class NetworkError(SessionSyncError):
    """Network and communication related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.NETWORK_CONNECTION_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY_WITH_BACKOFF, RecoveryAction.WAIT_FOR_NEXT_TICK],
            **kwargs
        )


class ClaimNotFound(SessionSyncError):
    """The requested claim is absent from the current token."""

    def __init__(self, claim_name: str, **kwargs):
        context = kwargs.pop('context', {})
        context['claim_name'] = claim_name

        super().__init__(
            message=f"Claim '{claim_name}' not found in current token",
            error_code=ErrorCode.CLAIM_NOT_FOUND,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.REFRESH_STATE],
            context=context,
            **kwargs
        )
        self.claim_name = claim_name


class ClaimTypeMismatch(SessionSyncError):
    """The claim exists but cannot be normalised to its declared type."""

    def __init__(self, claim_name: str, expected: str, actual: Any, **kwargs):
        context = kwargs.pop('context', {})
        context.update({
            'claim_name': claim_name,
            'expected_type': expected,
            'actual_type': type(actual).__name__
        })

        super().__init__(
            message=f"Claim '{claim_name}' expected {expected}, got {type(actual).__name__}",
            error_code=ErrorCode.CLAIM_TYPE_MISMATCH,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.IGNORE],
            context=context,
            **kwargs
        )
        self.claim_name = claim_name
        self.expected = expected
        self.actual = actual


class RevalidationActionFailed(SessionSyncError):
    """A scheduled token/profile check failed; the schedule continues."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.REVALIDATION_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.WAIT_FOR_NEXT_TICK],
            **kwargs
        )


class SchedulerStateError(SessionSyncError):
    """Double start or double stop of a scheduler; always absorbed."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.SCHEDULER_NOT_RUNNING, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.IGNORE],
            **kwargs
        )


class CredentialStoreError(SessionSyncError):
    """Reading or writing the credential store failed."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.STORE_READ_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.RETRY, RecoveryAction.LOGIN_AGAIN],
            **kwargs
        )


class RouteConflictError(SessionSyncError):
    """An owner id is already attached to another listener."""

    def __init__(self, message: str, owner_id: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if owner_id:
            context['owner_id'] = owner_id

        super().__init__(
            message=message,
            error_code=ErrorCode.HANDLE_OWNER_IN_USE,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            context=context,
            user_message="Another session handle is already using this name",
            **kwargs
        )


class ConfigurationError(SessionSyncError):
    """Configuration related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.CONFIG_INVALID_VALUE,
                 config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if config_key:
            context['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            context=context,
            **kwargs
        )


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> SessionSyncError:
    """
    Convert a generic exception to a structured SessionSyncError.

    Args:
        exception: The original exception
        context: Additional context information
        default_error_code: Default error code if specific mapping not found

    Returns:
        Structured SessionSyncError
    """
    if isinstance(exception, SessionSyncError):
        return exception

    exception_mapping = {
        ConnectionError: (ErrorCode.NETWORK_CONNECTION_FAILED, NetworkError),
        TimeoutError: (ErrorCode.NETWORK_TIMEOUT, NetworkError),
        FileNotFoundError: (ErrorCode.CONFIG_FILE_NOT_FOUND, ConfigurationError),
    }

    error_code, error_class = exception_mapping.get(
        type(exception),
        (default_error_code, SessionSyncError)
    )

    return error_class(
        message=str(exception) or type(exception).__name__,
        error_code=error_code,
        context=context,
        cause=exception
    )
