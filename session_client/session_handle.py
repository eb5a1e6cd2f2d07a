"""
Session handles for the Session Sync Client.

A SessionHandle is one consumer's view of the shared session. It starts and
ends interactive flows, answers state and claim queries from the credential
store, owns the consumer's revalidation scheduler and publishes everything
that happens on its event channel.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from session_shared.interfaces import (
    IAuthFlow, IClaimSource, ICredentialStore, ISessionListener, ITimerService
)
from session_shared.models import (
    AuthState, Claim, CountdownHidden, Error, ExpiryInfo, ExpiryWarning, GrantType,
    LoggedOut, NewToken, Session, TokenInfo, UserProfile
)
from session_shared.exceptions import (
    AuthFlowError, ErrorCode, SessionSyncError
)
from session_shared.logging_config import AuditEventType, AuditLogger

from .claims import compute_expiry, decode_claims, format_expiry_report, get_claim
from .config import ClientConfiguration
from .error_handling import ClientErrorHandler
from .notifications import EventChannel, NotificationRouter
from .revalidation import ProfileRevalidation
from .scheduler import RevalidationScheduler

logger = logging.getLogger(__name__)

_default_router = NotificationRouter()


def get_default_router() -> NotificationRouter:
    """Router shared by handles that are not given one explicitly."""
    return _default_router


class SessionHandle(ISessionListener, IClaimSource):
    """
    One consumer's handle on the shared session.

    The handle is the routed listener for its own flows: the router calls
    `on_new_token`, `on_logout` and `on_exception` on the handle's loop, the
    handle updates the store and then forwards the outcome to the consumer's
    listener, exactly once.

    State and claim queries read the credential store's current session, so
    a logout through any handle sharing the store ends this handle's
    revalidation at its next countdown tick (immediately with
    `follow_store=True`).
    """

    def __init__(
        self,
        owner_id: str,
        store: ICredentialStore,
        auth_flow: IAuthFlow,
        listener: Optional[ISessionListener] = None,
        config: Optional[ClientConfiguration] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        timers: Optional[ITimerService] = None,
        follow_store: bool = False,
        router: Optional[NotificationRouter] = None,
        error_handler: Optional[ClientErrorHandler] = None,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.owner_id = owner_id
        self.store = store
        self.auth_flow = auth_flow
        self.listener = listener
        self.config = config
        self.loop = loop or asyncio.get_running_loop()
        self.timers = timers
        self.router = router or get_default_router()
        self.error_handler = error_handler or ClientErrorHandler()
        self.audit_logger = audit_logger or AuditLogger()

        self.events = EventChannel()

        self._scheduler: Optional[RevalidationScheduler] = None
        self._pre_flight: Optional[Session] = None
        self._flow_kind: Optional[str] = None
        self._closed = False

        self.router.attach(owner_id, self, self.loop)
        self._unsubscribe_store = store.on_change(self._on_store_change) if follow_store else None

        logger.info(f"Session handle created for {owner_id} "
                    f"(state: {self.auth_state.value})")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # Configuration

    def _interval_ms(self) -> int:
        return self.config.get_interval_ms() if self.config else 60_000

    def _countdown_ms(self) -> int:
        return self.config.get_countdown_ms() if self.config else 1_000

    def _auto_start(self) -> bool:
        return self.config.is_auto_start_enabled() if self.config else True

    def _tail_length(self) -> int:
        return self.config.get_token_tail_length() if self.config else 30

    # State

    @property
    def session(self) -> Session:
        return self.store.get()

    @property
    def auth_state(self) -> AuthState:
        return self.store.get().auth_state

    @property
    def scheduler(self) -> Optional[RevalidationScheduler]:
        return self._scheduler

    def is_authenticated(self) -> bool:
        """Whether the shared session is currently authenticated."""
        return self.store.get().is_authenticated

    def _write(self, session: Session) -> None:
        self.store.put(session)

    def _on_store_change(self, session: Session) -> None:
        # Store pushes run on the writer's thread.
        try:
            self.loop.call_soon_threadsafe(self._apply_store_change, session)
        except RuntimeError as e:
            logger.debug(f"Store change for {self.owner_id} not applied: {e}")

    def _apply_store_change(self, session: Session) -> None:
        # In-flight states may still roll back.
        if self._closed or session.is_authenticated or session.auth_state.in_flight:
            return
        if self._scheduler is not None and self._scheduler.armed:
            logger.info(f"Session left the authenticated state, "
                        f"stopping revalidation for {self.owner_id}")
            self._scheduler.stop()
            self.events.publish(CountdownHidden(owner_id=self.owner_id))

    def refresh_state(self) -> bool:
        """
        Re-read the session from durable storage, picking up sessions written
        by other processes.

        Returns:
            Whether the session is authenticated after the refresh
        """
        previous = self.auth_state
        try:
            session = self.store.reload()
        except Exception as e:
            self._publish_error(e, ErrorCode.STORE_READ_FAILED)
            return self.is_authenticated()

        self.audit_logger.log_event(
            AuditEventType.STATE_REFRESH,
            f"State refreshed for handle: {self.owner_id}",
            owner_id=self.owner_id,
            subject=session.claims.get('sub'),
            result=session.auth_state.value,
            additional_context={'previous_state': previous.value}
        )
        logger.debug(f"State refreshed for {self.owner_id}: "
                     f"{previous.value} -> {session.auth_state.value}")

        if session.is_authenticated:
            self.report_expiry()
        return session.is_authenticated

    # Claim source

    def get_access_token(self) -> Optional[str]:
        return self.store.get().access_token

    def get_claims(self) -> Dict[str, Any]:
        return dict(self.store.get().claims)

    def get_claim(self, name: str) -> Claim:
        """
        Typed claim of the current token.

        Raises:
            ClaimNotFound: If the claim is absent
            ClaimTypeMismatch: If the value cannot be normalized
        """
        return get_claim(self.store.get().claims, name)

    def get_expiry(self) -> Optional[ExpiryInfo]:
        return compute_expiry(self.store.get().claims)

    def report_expiry(self) -> Optional[ExpiryInfo]:
        """Publish token expiry information, and a warning when it is near."""
        expiry = self.get_expiry()
        report = format_expiry_report(expiry)
        self.events.publish(TokenInfo(owner_id=self.owner_id, expiry=expiry, report=report))

        if expiry is not None:
            logger.info(f"Token info for {self.owner_id}:\n{report}")
            if expiry.is_near_expiry:
                logger.warning(f"Token for {self.owner_id} expires in "
                               f"{expiry.remaining_seconds}s")
                self.events.publish(ExpiryWarning(
                    owner_id=self.owner_id, remaining_seconds=expiry.remaining_seconds))
        return expiry

    async def fetch_user_profile(self) -> UserProfile:
        token = self.get_access_token()
        if not token:
            raise AuthFlowError("Not authenticated", error_code=ErrorCode.AUTH_NOT_AUTHENTICATED)
        return await self.auth_flow.fetch_user_profile(token)

    # Interactive flows

    def _begin_flow(self, kind: str, in_flight: AuthState) -> Optional[Session]:
        current = self.store.get()
        if current.auth_state.in_flight:
            error = AuthFlowError(
                f"Cannot start {kind}: another flow is in progress "
                f"(state: {current.auth_state.value})",
                error_code=ErrorCode.AUTH_FLOW_IN_PROGRESS,
                context={'owner_id': self.owner_id, 'flow': kind},
                user_message="A login or logout is already in progress"
            )
            logger.warning(error.message)
            self.router.deliver_exception(self.owner_id, error)
            return None

        self._pre_flight = current
        self._flow_kind = kind
        self._write(current.with_state(in_flight))
        return current

    def login(self, grant_type: GrantType = GrantType.PKCE) -> None:
        """Start an interactive login; the outcome arrives on the listener."""
        self._ensure_open()
        if self._begin_flow('login', AuthState.AUTHENTICATING) is None:
            return

        logger.info(f"Login started for {self.owner_id}")
        completion = self.router.begin(self.owner_id, 'login')
        try:
            self.auth_flow.login(grant_type, completion)
        except Exception as e:
            completion.failed(AuthFlowError(f"Login could not be started: {e}", cause=e))

    def logout(self) -> None:
        """Stop revalidation, then start an interactive logout."""
        self._ensure_open()
        self.stop_revalidation()
        if self._begin_flow('logout', AuthState.LOGGING_OUT) is None:
            return

        logger.info(f"Logout started for {self.owner_id}")
        completion = self.router.begin(self.owner_id, 'logout')
        try:
            self.auth_flow.logout(completion)
        except Exception as e:
            completion.failed(AuthFlowError(
                f"Logout could not be started: {e}",
                error_code=ErrorCode.AUTH_LOGOUT_FAILED,
                cause=e
            ))

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionSyncError(
                f"Session handle {self.owner_id} is closed",
                error_code=ErrorCode.INTERNAL_UNEXPECTED_ERROR
            )

    # Routed outcomes

    def on_new_token(self, token: str, refresh_token: Optional[str] = None,
                     id_token: Optional[str] = None) -> None:
        previous = self._pre_flight or self.store.get()
        claims = decode_claims(token)

        self._write(Session(
            access_token=token,
            claims=claims,
            auth_state=AuthState.AUTHENTICATED,
            refresh_token=refresh_token or previous.refresh_token,
            id_token=id_token or previous.id_token
        ))
        self._pre_flight = None
        self._flow_kind = None

        self.audit_logger.log_authentication(self.owner_id, success=True,
                                             subject=claims.get('sub'))
        logger.info(f"New token received for {self.owner_id}")

        self.events.publish(NewToken(owner_id=self.owner_id, token=token))
        self.report_expiry()
        self._forward('on_new_token', token)

        if self._auto_start() and (self._scheduler is None or not self._scheduler.armed):
            self.start_revalidation()

    def on_logout(self) -> None:
        self.stop_revalidation()
        self._write(Session())
        self._pre_flight = None
        self._flow_kind = None

        self.audit_logger.log_logout(self.owner_id, success=True)
        logger.info(f"Logged out: {self.owner_id}")

        self.events.publish(LoggedOut(owner_id=self.owner_id))
        self._forward('on_logout')

    def on_exception(self, exception: Exception) -> None:
        if not isinstance(exception, AuthFlowError):
            exception = AuthFlowError(
                str(exception) or type(exception).__name__,
                error_code=(ErrorCode.AUTH_LOGOUT_FAILED if self._flow_kind == 'logout'
                            else ErrorCode.AUTH_FLOW_FAILED),
                cause=exception
            )

        error = self._publish_error(exception, ErrorCode.AUTH_FLOW_FAILED)

        # A rejected flow never started, so there is nothing to roll back.
        if error.error_code != ErrorCode.AUTH_FLOW_IN_PROGRESS and self._pre_flight is not None:
            self._roll_back_flow(error)

        self._forward('on_exception', error)

    def _restore_pre_flight(self) -> Optional[str]:
        """Put the store back in the state held before this handle's flow began."""
        restored = self._pre_flight
        kind = self._flow_kind
        self._pre_flight = None
        self._flow_kind = None

        if self.store.get().auth_state.in_flight:
            self._write(restored)
        return kind

    def _roll_back_flow(self, error: SessionSyncError) -> None:
        kind = self._restore_pre_flight()

        if kind == 'logout':
            self.audit_logger.log_logout(self.owner_id, success=False,
                                         failure_reason=error.message)
        else:
            self.audit_logger.log_authentication(self.owner_id, success=False,
                                                 failure_reason=error.message)

        logger.info(f"{kind or 'flow'} failed for {self.owner_id}, "
                    f"state restored to {self.auth_state.value}")

        if kind == 'logout' and self.is_authenticated() and self._auto_start():
            self.start_revalidation()

    def _publish_error(self, exception: Exception, default_code: ErrorCode) -> SessionSyncError:
        error = self.error_handler.handle_error(
            exception, {'owner_id': self.owner_id}, default_error_code=default_code,
            owner_id=self.owner_id
        )
        self.events.publish(Error(owner_id=self.owner_id, cause=error,
                                  message=self.error_handler.format_user_message(error)))
        return error

    def _forward(self, method: str, *args) -> None:
        if self.listener is None:
            return
        try:
            getattr(self.listener, method)(*args)
        except Exception as e:
            logger.error(f"Error in {method} listener of {self.owner_id}: {e}")

    # Revalidation

    def start_revalidation(self) -> RevalidationScheduler:
        """Start (or restart) this handle's revalidation schedule."""
        self._ensure_open()
        if self._scheduler is None:
            self._scheduler = RevalidationScheduler(
                owner_id=self.owner_id,
                action=ProfileRevalidation(self.owner_id, self, self.auth_flow,
                                           tail_length=self._tail_length(),
                                           audit_logger=self.audit_logger),
                is_authenticated=self.is_authenticated,
                publish=self.events.publish,
                timers=self.timers,
                loop=self.loop,
                interval_ms=self._interval_ms(),
                countdown_ms=self._countdown_ms(),
                error_handler=self.error_handler
            )
        self._scheduler.start()
        return self._scheduler

    def stop_revalidation(self) -> None:
        """Stop this handle's revalidation schedule; a no-op when none is armed."""
        if self._scheduler is not None:
            self._scheduler.stop()

    # Teardown

    def close(self) -> None:
        """
        Stop revalidation and detach; no callback reaches this handle afterwards.

        A flow still in progress is abandoned: its outcome is dropped and the
        shared session returns to the state held before the flow began.
        """
        if self._closed:
            return
        self._closed = True

        self.stop_revalidation()
        if self._pre_flight is not None:
            kind = self._restore_pre_flight()
            logger.warning(f"Abandoned {kind} flow of closed handle {self.owner_id}, "
                           f"state restored to {self.auth_state.value}")
        self.router.detach(self.owner_id, self)
        if self._unsubscribe_store is not None:
            self._unsubscribe_store()
            self._unsubscribe_store = None
        self.events.close()

        logger.info(f"Session handle closed for {self.owner_id}")
