import logging
import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from collospot.core.exceptions import DuplicateResource, NotFound, RouterUnavailable
from collospot.models import HotspotSession, Plan, SessionStatus
from collospot.services.router import ConnectionInfo, speed_profile_for_plan


logger = logging.getLogger(__name__)

_DEFERRED_REVOKES = "collospot.deferred_revokes"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive timestamps; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_session_token() -> str:
    # 192 bits from the OS CSPRNG.
    return secrets.token_hex(24)


class SessionLedger:
    """
    Owns the session lifecycle: ACTIVE -> EXPIRED (end time passed) or
    ACTIVE -> TERMINATED (explicit revocation). Both are terminal.

    Every status change is a conditional single-row UPDATE guarded by
    ``status = 'ACTIVE'`` so only one caller wins a transition and only the
    winner revokes router access. Router failures are logged, never raised.
    """

    def __init__(self, router):
        self.router = router

    def _transition(self, db: Session, session_id: int, to_status: SessionStatus) -> bool:
        result = db.execute(
            update(HotspotSession)
            .where(HotspotSession.id == session_id, HotspotSession.status == SessionStatus.ACTIVE)
            .values(status=to_status)
        )
        return result.rowcount == 1

    def _revoke(self, token: str) -> None:
        try:
            self.router.revoke_access(token)
        except RouterUnavailable as exc:
            logger.warning("Router revoke failed for session %s...: %s", token[:8], exc.message)

    def _defer_revoke(self, db: Session, token: str) -> None:
        db.info.setdefault(_DEFERRED_REVOKES, []).append(token)

    def release_deferred_revokes(self, db: Session) -> int:
        """Run revocations queued inside a transaction. Call after commit."""
        tokens = db.info.pop(_DEFERRED_REVOKES, [])
        for token in tokens:
            self._revoke(token)
        return len(tokens)

    def discard_deferred_revokes(self, db: Session) -> None:
        db.info.pop(_DEFERRED_REVOKES, None)

    def get_active_for_pair(self, db: Session, user_id: int, plan_id: int, now: datetime | None = None) -> HotspotSession | None:
        """
        Live ACTIVE session for (user, plan). A row still flagged ACTIVE past its
        end time is expired here, and its revocation deferred until the caller
        commits, so it cannot block a new purchase.
        """
        now = now or utcnow()
        session = (
            db.query(HotspotSession)
            .filter(
                HotspotSession.user_id == user_id,
                HotspotSession.plan_id == plan_id,
                HotspotSession.status == SessionStatus.ACTIVE,
            )
            .first()
        )
        if session is None:
            return None
        if as_utc(session.end_time) >= now:
            return session
        if self._transition(db, session.id, SessionStatus.EXPIRED):
            self._defer_revoke(db, session.token)
        return None

    def create_session(
        self,
        db: Session,
        user_id: int,
        plan_id: int,
        token: str | None = None,
        *,
        payment_id: int | None = None,
        commit: bool = True,
    ) -> HotspotSession:
        plan = db.get(Plan, plan_id)
        if plan is None:
            raise NotFound("Plan not found")
        if self.get_active_for_pair(db, user_id, plan_id) is not None:
            raise DuplicateResource("An active session already exists for this plan")

        now = utcnow()
        session = HotspotSession(
            user_id=user_id,
            plan_id=plan_id,
            payment_id=payment_id,
            token=token or new_session_token(),
            start_time=now,
            end_time=now + timedelta(hours=plan.duration_hours),
            status=SessionStatus.ACTIVE,
            data_used=0,
        )
        try:
            with db.begin_nested():
                db.add(session)
        except IntegrityError as exc:
            # Lost the race against a concurrent creation for the same pair or payment.
            logger.info("Session insert for user=%s plan=%s lost a race: %s", user_id, plan_id, exc.orig)
            raise DuplicateResource("An active session already exists for this plan") from exc

        if commit:
            db.commit()
            db.refresh(session)
            self.release_deferred_revokes(db)
        logger.info("Created session id=%s user=%s plan=%s until %s", session.id, user_id, plan_id, session.end_time)
        return session

    def get_active_session(self, db: Session, token: str) -> HotspotSession | None:
        session = db.query(HotspotSession).filter(HotspotSession.token == token).first()
        if session is None or session.status != SessionStatus.ACTIVE:
            return None
        if as_utc(session.end_time) >= utcnow():
            return session
        won = self._transition(db, session.id, SessionStatus.EXPIRED)
        db.commit()
        if won:
            logger.info("Session %s expired on read", session.id)
            self._revoke(session.token)
        return None

    def get_by_token(self, db: Session, token: str) -> HotspotSession | None:
        return db.query(HotspotSession).filter(HotspotSession.token == token).first()

    def terminate_session(self, db: Session, session_id: int) -> HotspotSession:
        session = db.get(HotspotSession, session_id)
        if session is None:
            raise NotFound("Session not found")
        if session.status != SessionStatus.ACTIVE:
            return session
        won = self._transition(db, session_id, SessionStatus.TERMINATED)
        db.commit()
        if won:
            logger.info("Session %s terminated", session_id)
            self._revoke(session.token)
        db.refresh(session)
        return session

    def sweep(self, db: Session, now: datetime | None = None) -> int:
        now = now or utcnow()
        candidates = (
            db.query(HotspotSession.id, HotspotSession.token)
            .filter(HotspotSession.status == SessionStatus.ACTIVE, HotspotSession.end_time < now)
            .all()
        )
        expired = []
        for session_id, token in candidates:
            if self._transition(db, session_id, SessionStatus.EXPIRED):
                expired.append(token)
        db.commit()
        for token in expired:
            self._revoke(token)
        if expired:
            logger.info("Sweep expired %s session(s)", len(expired))
        return len(expired)

    def provision(self, db: Session, session: HotspotSession) -> str | None:
        """Grant router access for a session. Billing state does not depend on the outcome."""
        plan = session.plan or db.get(Plan, session.plan_id)
        try:
            handle = self.router.grant_access(session.token, speed_profile_for_plan(plan))
        except RouterUnavailable as exc:
            logger.warning("Router grant failed for session %s: %s", session.id, exc.message)
            return None
        db.execute(
            update(HotspotSession)
            .where(HotspotSession.id == session.id, HotspotSession.status == SessionStatus.ACTIVE)
            .values(router_handle=handle)
        )
        db.commit()
        return handle

    def list_sessions(self, db: Session, status: SessionStatus | None = None, limit: int = 50) -> list[HotspotSession]:
        query = db.query(HotspotSession)
        if status is not None:
            query = query.filter(HotspotSession.status == status)
        return query.order_by(HotspotSession.start_time.desc()).limit(limit).all()

    def record_usage(self, db: Session, connections: list[ConnectionInfo]) -> int:
        usage = {}
        for conn in connections:
            usage[conn.username] = usage.get(conn.username, 0) + conn.bytes_in + conn.bytes_out
        if not usage:
            return 0
        sessions = (
            db.query(HotspotSession)
            .filter(HotspotSession.status == SessionStatus.ACTIVE, HotspotSession.token.in_(list(usage)))
            .all()
        )
        for session in sessions:
            # Router counters reset on reconnect; never move the total backwards.
            session.data_used = max(int(session.data_used or 0), usage[session.token])
        db.commit()
        return len(sessions)
