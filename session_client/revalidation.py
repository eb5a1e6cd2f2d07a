"""
Revalidation action run by the scheduler on every tick.

The action reads the current access token, fetches the user profile for it
and reports the outcome. Failures are raised as RevalidationActionFailed and
contained by the scheduler.
"""

import logging
from typing import Optional

from session_shared.interfaces import IAuthFlow, IClaimSource
from session_shared.models import RevalidationSucceeded
from session_shared.exceptions import ErrorCode, RevalidationActionFailed
from session_shared.logging_config import AuditLogger

from .claims import token_tail

logger = logging.getLogger(__name__)


class ProfileRevalidation:
    """Token and profile check for one session handle."""

    def __init__(self, owner_id: str, claim_source: IClaimSource, auth_flow: IAuthFlow,
                 tail_length: int = 30, audit_logger: Optional[AuditLogger] = None):
        self.owner_id = owner_id
        self.claim_source = claim_source
        self.auth_flow = auth_flow
        self.tail_length = tail_length
        self.audit_logger = audit_logger or AuditLogger()

    async def __call__(self) -> RevalidationSucceeded:
        token = self.claim_source.get_access_token()
        if not token:
            self.audit_logger.log_revalidation(self.owner_id, success=False,
                                               error_message="no access token")
            raise RevalidationActionFailed(
                "No access token available for revalidation",
                error_code=ErrorCode.AUTH_NOT_AUTHENTICATED,
                context={'owner_id': self.owner_id}
            )

        tail = token_tail(token, self.tail_length)
        subject = self.claim_source.get_claims().get('sub')

        try:
            profile = await self.auth_flow.fetch_user_profile(token)
        except Exception as e:
            self.audit_logger.log_revalidation(self.owner_id, success=False,
                                               subject=subject, error_message=str(e))
            raise RevalidationActionFailed(
                f"Failed to fetch user profile: {e}",
                error_code=ErrorCode.REVALIDATION_PROFILE_UNAVAILABLE,
                context={'owner_id': self.owner_id, 'token_tail': tail},
                cause=e,
                user_message="Could not revalidate the session, will retry on the next tick"
            )

        logger.info(f"Session revalidated for {self.owner_id}: token ...{tail}, "
                    f"user {profile.display_name} <{profile.email}>")
        self.audit_logger.log_revalidation(self.owner_id, success=True, subject=subject)

        return RevalidationSucceeded(
            owner_id=self.owner_id,
            token_tail=tail,
            display_name=profile.display_name,
            email=profile.email
        )
