import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func
from sqlalchemy.orm import Session

from collospot.core.database import get_db
from collospot.core.exceptions import RouterUnavailable
from collospot.dependencies import get_ledger, get_reconciler, get_router_gateway, require_admin
from collospot.models import HotspotSession, Payment, PaymentStatus, SessionStatus, User, UserRole
from collospot.schemas.admin import DashboardOut, RouterStatusOut, RouterUserOut, SessionListResponse
from collospot.schemas.payment import PaymentOut
from collospot.schemas.session import SessionOut
from collospot.services.reconciler import PaymentReconciler
from collospot.services.sessions import SessionLedger, utcnow

router = APIRouter()
logger = logging.getLogger(__name__)


def _coerce_status(value: Optional[str]) -> Optional[SessionStatus]:
    if value is None:
        return None
    raw = value.strip()
    if not raw:
        return None
    for member in SessionStatus:
        if raw.upper() == member.name:
            return member
    raise HTTPException(status_code=400, detail="Invalid status")


@router.get("/sessions", response_model=SessionListResponse)
def list_sessions(
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    admin=Depends(require_admin),
    db: Session = Depends(get_db),
    ledger: SessionLedger = Depends(get_ledger),
):
    status_filter = _coerce_status(status)
    items = ledger.list_sessions(db, status=status_filter, limit=limit)
    return SessionListResponse(items=[SessionOut.model_validate(item) for item in items], total=len(items))


@router.post("/sessions/{session_id}/terminate", response_model=SessionOut)
def terminate_session(
    session_id: int,
    admin=Depends(require_admin),
    db: Session = Depends(get_db),
    ledger: SessionLedger = Depends(get_ledger),
):
    session = ledger.terminate_session(db, session_id)
    logger.info("Admin %s terminated session %s", admin.id, session_id)
    return session


@router.post("/payments/{payment_id}/cancel", response_model=PaymentOut)
def cancel_payment(
    payment_id: int,
    admin=Depends(require_admin),
    db: Session = Depends(get_db),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    payment = reconciler.cancel_payment(db, payment_id)
    logger.info("Admin %s cancelled payment %s", admin.id, payment_id)
    return payment


@router.get("/router/status", response_model=RouterStatusOut)
def router_status(
    admin=Depends(require_admin),
    db: Session = Depends(get_db),
    ledger: SessionLedger = Depends(get_ledger),
    gateway=Depends(get_router_gateway),
):
    try:
        connections = gateway.list_active_connections()
    except RouterUnavailable as exc:
        logger.warning("Router status check failed: %s", exc.message)
        return RouterStatusOut(reachable=False, active_users=0, users=[], detail="Router unreachable")

    ledger.record_usage(db, connections)
    users = [
        RouterUserOut(
            session_id=conn.session_id,
            username=conn.username,
            ip_address=conn.ip_address,
            mac_address=conn.mac_address,
            bytes_in=conn.bytes_in,
            bytes_out=conn.bytes_out,
            uptime=conn.uptime,
        )
        for conn in connections
    ]
    return RouterStatusOut(reachable=True, active_users=len(users), users=users)


@router.get("/dashboard", response_model=DashboardOut)
def dashboard(admin=Depends(require_admin), db: Session = Depends(get_db)):
    today_start = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    completed = Payment.status == PaymentStatus.COMPLETED

    total_users = db.query(func.count(User.id)).filter(User.role == UserRole.CUSTOMER).scalar() or 0
    active_users = (
        db.query(func.count(User.id))
        .filter(User.role == UserRole.CUSTOMER, User.is_active.is_(True))
        .scalar()
        or 0
    )
    total_revenue = db.query(func.sum(Payment.amount)).filter(completed).scalar() or 0
    today_revenue = (
        db.query(func.sum(Payment.amount)).filter(completed, Payment.created_at >= today_start).scalar() or 0
    )
    active_sessions = (
        db.query(func.count(HotspotSession.id)).filter(HotspotSession.status == SessionStatus.ACTIVE).scalar() or 0
    )
    total_sessions = db.query(func.count(HotspotSession.id)).scalar() or 0
    pending_payments = (
        db.query(func.count(Payment.id)).filter(Payment.status == PaymentStatus.PENDING).scalar() or 0
    )
    return DashboardOut(
        total_users=total_users,
        active_users=active_users,
        total_revenue=Decimal(str(total_revenue)),
        today_revenue=Decimal(str(today_revenue)),
        active_sessions=active_sessions,
        total_sessions=total_sessions,
        pending_payments=pending_payments,
    )
