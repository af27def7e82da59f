from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from storefront.logging import get_logger
from storefront.service.errors import AuthenticationError, SessionExpiredError
from storefront.storage.models import Account, Session, utcnow

logger = get_logger(__name__)


class SessionManager:
    """Server-side sessions with rotation on login and rolling inactivity expiry."""

    def __init__(
        self,
        store: Any,
        *,
        inactivity_minutes: int = 30,
        absolute_ttl_hours: int = 24,
    ) -> None:
        self.store = store
        self.inactivity = timedelta(minutes=inactivity_minutes)
        self.absolute_ttl_hours = absolute_ttl_hours

    def create(
        self,
        account: Account,
        *,
        previous_session_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Session:
        """Issue a fresh session id, destroying whatever id the client presented."""
        if previous_session_id:
            self.store.delete_session(previous_session_id)
        session = Session.new(
            account.id,
            account.email,
            account.role,
            absolute_ttl_hours=self.absolute_ttl_hours,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        created = self.store.create_session(session)
        logger.info(
            "session_created",
            account_id=account.id,
            rotated=bool(previous_session_id),
        )
        return created

    def is_expired(self, session: Session, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now - session.last_activity > self.inactivity or now >= session.expires_at

    def idle_expires_at(self, session: Session) -> datetime:
        return min(session.last_activity + self.inactivity, session.expires_at)

    def resolve(self, session_id: Optional[str], *, now: Optional[datetime] = None) -> Session:
        """Load a session and extend its activity window, or raise."""
        if not session_id:
            raise AuthenticationError("authentication required")
        now = now or utcnow()
        session = self.store.get_session(session_id)
        if not session:
            raise AuthenticationError("invalid session")
        if self.is_expired(session, now):
            self.store.delete_session(session_id)
            logger.info("session_expired", account_id=session.account_id)
            raise SessionExpiredError()
        touched = self.store.touch_session(session_id, now)
        if touched is None:
            # deleted concurrently, e.g. by logout in another tab
            raise AuthenticationError("invalid session")
        return touched

    def refresh(self, session_id: Optional[str]) -> Session:
        return self.resolve(session_id)

    def destroy(self, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        return self.store.delete_session(session_id)

    def revoke_all(self, account_id: str, *, except_session_id: Optional[str] = None) -> int:
        revoked = self.store.delete_account_sessions(
            account_id, except_session_id=except_session_id
        )
        if revoked:
            logger.info("sessions_revoked", account_id=account_id, count=revoked)
        return revoked
