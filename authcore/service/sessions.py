from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

from authcore.logging import get_logger
from authcore.service.errors import AuthorizationError, NotFoundError
from authcore.service.tokens import TokenClaims
from authcore.storage.models import RevocationReason, Session, TokenType

if TYPE_CHECKING:
    from authcore.service.auth import AuthStore

logger = get_logger(__name__)


class SessionLifecycle:
    """Session-row transitions: logout, per-session and bulk invalidation.

    Logout is split in two with different failure contracts:
    ``revoke_session_tokens`` must succeed or raise, while
    ``deactivate_remaining_sessions`` runs as a background task whose
    failures the caller only logs.
    """

    def __init__(self, store: "AuthStore") -> None:
        self.store = store

    def revoke_session_tokens(
        self, claims: TokenClaims, refresh_token: str
    ) -> Optional[Session]:
        """Blacklist the refresh and access JTIs and deactivate the session atomically.

        Returns the deactivated session, or None when no active row matched
        (the refresh JTI is revoked either way). Store errors propagate and
        leave nothing applied.
        """
        session = self.store.logout_session(
            claims.jti,
            refresh_token,
            user_id=claims.sub,
            refresh_expires_at=claims.expires_at,
        )
        logger.info(
            "session_logged_out",
            user_id=claims.sub,
            session_id=session.id if session else None,
            access_revoked=bool(session and session.access_token_jti),
        )
        return session

    def deactivate_remaining_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        count = self.store.deactivate_user_sessions(user_id, except_session_id=except_session_id)
        logger.info("session_cascade_completed", user_id=user_id, deactivated=count)
        return count

    def list_active(self, user_id: str) -> List[Session]:
        return self.store.list_active_sessions(user_id)

    def invalidate(self, user_id: str, session_id: str) -> Session:
        """Deactivate one of the caller's sessions and revoke its current access JTI."""
        session = self.store.get_session(session_id)
        if not session:
            raise NotFoundError("session not found")
        if session.user_id != user_id:
            logger.warning(
                "session_invalidate_forbidden", user_id=user_id, session_id=session_id
            )
            raise AuthorizationError("session belongs to another user")
        self.store.deactivate_session(session_id)
        if session.access_token_jti:
            self.store.revoke_token(
                session.access_token_jti,
                TokenType.ACCESS,
                RevocationReason.SESSION_INVALIDATED,
                user_id=user_id,
            )
        logger.info("session_invalidated", user_id=user_id, session_id=session_id)
        return session

    def invalidate_all(self, user_id: str) -> int:
        """Deactivate every session of ``user_id``.

        Access tokens already handed to those sessions are not blacklisted;
        they stay usable until their own expiry (``JWT_ACCESS_EXPIRY``).
        """
        count = self.store.deactivate_user_sessions(user_id)
        logger.info("sessions_invalidated_all", user_id=user_id, deactivated=count)
        return count
