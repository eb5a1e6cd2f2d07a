"""
HTTP API Client for the Session Sync Client.

This module fetches the user profile from the identity provider with bearer
authentication, retry logic and mapping of HTTP failures to structured errors.
"""

import asyncio
import json
import logging
import random
from datetime import datetime
from typing import Optional, Dict, Any
from urllib.parse import urljoin

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError

from session_shared.models import UserProfile
from session_shared.exceptions import (
    AuthenticationError, ErrorCode, NetworkError, SessionSyncError
)

logger = logging.getLogger(__name__)

USER_PROFILE_PATH = '/oauth2/v2/user_profile'


class RetryConfig:
    """Configuration for retry logic."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay


class ProfileAPIClient:
    """
    HTTP client for the identity provider's user profile endpoint.
    """

    def __init__(
        self,
        domain: str,
        timeout: float = 30.0,
        retry_config: Optional[RetryConfig] = None
    ):
        self.domain = domain.rstrip('/')
        self.timeout = ClientTimeout(total=timeout)
        self.retry_config = retry_config or RetryConfig()

        self._session: Optional[ClientSession] = None
        self._is_offline = False
        self._last_connection_attempt: Optional[datetime] = None

        logger.info(f"Profile API client initialized for domain: {self.domain}")

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=10,
                limit_per_host=5,
                keepalive_timeout=30,
                enable_cleanup_closed=True
            )
            self._session = ClientSession(
                connector=connector,
                timeout=self.timeout,
                headers={
                    'User-Agent': 'SessionSyncClient/1.0',
                    'Accept': 'application/json'
                }
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def _make_request(
        self,
        method: str,
        path: str,
        access_token: str,
        retry: bool = True
    ) -> Dict[str, Any]:
        """
        Make an authenticated HTTP request with retry logic.

        Network failures are retried with exponential backoff; HTTP error
        statuses are mapped to structured errors and not retried.

        Raises:
            AuthenticationError: On 401/403
            NetworkError: On other failures or when retries are exhausted
        """
        await self._ensure_session()

        url = urljoin(self.domain + '/', path.lstrip('/'))
        headers = {'Authorization': f'Bearer {access_token}'}

        attempt = 0
        last_exception = None

        while attempt <= (self.retry_config.max_retries if retry else 0):
            try:
                logger.debug(f"Making {method} request to {url} (attempt {attempt + 1})")

                async with self._session.request(method=method, url=url, headers=headers) as response:
                    self._is_offline = False
                    self._last_connection_attempt = datetime.now()

                    if response.status == 200:
                        try:
                            return await response.json()
                        except (json.JSONDecodeError, aiohttp.ContentTypeError) as e:
                            raise NetworkError(
                                f"Invalid response body from {path}: {e}",
                                error_code=ErrorCode.NETWORK_UNEXPECTED_RESPONSE,
                                cause=e
                            )

                    error_detail = await self._get_error_detail(response)

                    if response.status in (401, 403):
                        raise AuthenticationError(
                            f"Authentication failed ({response.status}): {error_detail}",
                            context={'status': response.status, 'path': path},
                            user_message="The session is no longer valid, please log in again"
                        )
                    if response.status >= 500:
                        raise NetworkError(
                            f"Server error ({response.status}): {error_detail}",
                            error_code=ErrorCode.NETWORK_SERVER_ERROR,
                            context={'status': response.status, 'path': path}
                        )
                    raise NetworkError(
                        f"Request failed ({response.status}): {error_detail}",
                        error_code=ErrorCode.NETWORK_UNEXPECTED_RESPONSE,
                        context={'status': response.status, 'path': path}
                    )

            except SessionSyncError:
                raise

            except (ClientError, asyncio.TimeoutError, OSError) as e:
                last_exception = e
                logger.warning(f"Network error on attempt {attempt + 1}: {e}")

                self._is_offline = True
                self._last_connection_attempt = datetime.now()

                if not retry or attempt >= self.retry_config.max_retries:
                    break

                delay = self.retry_config.delay_for(attempt)
                logger.info(f"Retrying in {delay:.1f} seconds...")
                await asyncio.sleep(delay)
                attempt += 1

        raise NetworkError(
            f"Network request failed after {attempt + 1} attempts: {last_exception}",
            error_code=(ErrorCode.NETWORK_TIMEOUT
                        if isinstance(last_exception, asyncio.TimeoutError)
                        else ErrorCode.NETWORK_CONNECTION_FAILED),
            context={'path': path, 'attempts': attempt + 1},
            cause=last_exception
        )

    async def _get_error_detail(self, response) -> str:
        """Extract error information from response."""
        try:
            data = await response.json()
            return data.get('detail') or data.get('message') or json.dumps(data)
        except (json.JSONDecodeError, aiohttp.ContentTypeError, AttributeError):
            return await response.text() or "Unknown error"

    def is_offline(self) -> bool:
        return self._is_offline

    def get_last_connection_attempt(self) -> Optional[datetime]:
        return self._last_connection_attempt

    async def get_user_profile(self, access_token: str) -> UserProfile:
        """
        Fetch the profile of the user owning `access_token`.

        Returns:
            UserProfile with first name, last name and preferred email
        """
        data = await self._make_request('GET', USER_PROFILE_PATH, access_token)
        profile = UserProfile.from_api(data)
        logger.debug(f"Fetched user profile: {profile.display_name}")
        return profile
