"""
Auth flow for pre-issued tokens.

Login accepts a token obtained outside this process (from configuration, the
environment or any provider callable) and reports it through the flow
completion from a worker thread, the way an interactive browser flow would.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from session_shared.interfaces import IAuthFlow, IFlowCompletion
from session_shared.models import GrantType, UserProfile
from session_shared.exceptions import AuthFlowError, ConfigurationError, ErrorCode

from ..api_client import ProfileAPIClient
from ..claims import compute_expiry, decode_claims

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Optional[str]]


class PreIssuedTokenAuthFlow(IAuthFlow):
    """
    Auth flow that completes logins with a pre-issued access token.

    Expired tokens are rejected. Logout has no remote side and always
    completes successfully.
    """

    def __init__(self, token_provider: TokenProvider,
                 api_client: Optional[ProfileAPIClient] = None):
        self.token_provider = token_provider
        self.api_client = api_client
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="auth-flow")

    def login(self, grant_type: GrantType, completion: IFlowCompletion) -> None:
        logger.info(f"Starting login (grant type: {grant_type.value})")
        self._executor.submit(self._complete_login, completion)

    def _complete_login(self, completion: IFlowCompletion) -> None:
        try:
            token = self.token_provider()
        except Exception as e:
            completion.failed(AuthFlowError(f"Token provider failed: {e}", cause=e))
            return

        if not token:
            completion.failed(AuthFlowError(
                "No access token available to log in with",
                user_message="No access token configured, pass --token or set SESSION_SYNC_ACCESS_TOKEN"
            ))
            return

        expiry = compute_expiry(decode_claims(token))
        if expiry is not None and expiry.remaining_seconds <= 0:
            completion.failed(AuthFlowError(
                f"Access token expired {-expiry.remaining_seconds}s ago",
                error_code=ErrorCode.AUTH_TOKEN_EXPIRED,
                context={'expires_at_millis': expiry.expires_at_millis}
            ))
            return

        completion.new_token(token)

    def logout(self, completion: IFlowCompletion) -> None:
        logger.info("Starting logout")
        self._executor.submit(completion.logged_out)

    async def fetch_user_profile(self, access_token: str) -> UserProfile:
        if self.api_client is None:
            raise ConfigurationError(
                "No identity provider domain configured for profile requests",
                config_key='auth.domain'
            )
        return await self.api_client.get_user_profile(access_token)

    async def close(self) -> None:
        self._executor.shutdown(wait=False)
        if self.api_client is not None:
            await self.api_client.close()
