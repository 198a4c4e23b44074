import hmac
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from collospot.core.config import get_settings
from collospot.core.database import get_db
from collospot.dependencies import get_ledger, get_reconciler
from collospot.middlewares.rate_limit import limiter
from collospot.models import HotspotSession, Plan
from collospot.schemas.payment import InitiatePaymentRequest, InitiatePaymentResponse, PaymentStatusOut
from collospot.schemas.plan import PlanOut
from collospot.schemas.session import ConnectRequest, ConnectResponse, SessionSummary
from collospot.services.reconciler import PaymentReconciler
from collospot.services.sessions import SessionLedger, as_utc, utcnow

router = APIRouter()
settings = get_settings()
logger = logging.getLogger(__name__)

# Daraja retries any callback that is not acknowledged with this body.
CALLBACK_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


def _summary(session: HotspotSession) -> SessionSummary:
    end_time = as_utc(session.end_time)
    remaining = int((end_time - utcnow()).total_seconds())
    return SessionSummary(
        token=session.token,
        plan_id=session.plan_id,
        plan_name=session.plan.name,
        start_time=as_utc(session.start_time),
        end_time=end_time,
        status=session.status.value.lower(),
        remaining_seconds=max(0, remaining),
    )


@router.get("/plans", response_model=list[PlanOut])
def list_plans(db: Session = Depends(get_db)):
    return db.query(Plan).filter(Plan.is_active.is_(True)).order_by(Plan.price.asc()).all()


@router.post("/payment", response_model=InitiatePaymentResponse)
@limiter.limit("5/minute")
def initiate_payment(
    request: Request,
    payload: InitiatePaymentRequest,
    db: Session = Depends(get_db),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    result = reconciler.initiate_payment(db, payload.phone, payload.plan_id, payload.amount)
    return InitiatePaymentResponse(
        correlation_id=result.correlation_id,
        customer_message=result.customer_message,
    )


@router.get("/payment/status/{correlation_id}", response_model=PaymentStatusOut)
def payment_status(
    correlation_id: str,
    db: Session = Depends(get_db),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    view = reconciler.poll_status(db, correlation_id)
    return PaymentStatusOut(
        status=view.status.value.lower(),
        amount=view.amount,
        session_token=view.session_token,
    )


@router.post("/payment/callback")
async def mpesa_callback(
    request: Request,
    db: Session = Depends(get_db),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    expected = settings.mpesa_callback_token
    if expected:
        supplied = request.query_params.get("token") or ""
        if not hmac.compare_digest(supplied.encode(), expected.encode()):
            logger.warning("M-Pesa callback with bad token from %s dropped", request.client.host if request.client else "-")
            return CALLBACK_ACK

    body = await request.body()
    try:
        outcome = await run_in_threadpool(reconciler.handle_callback, db, body)
    except Exception:
        # The provider cannot act on our failure; the janitor settles the payment later.
        logger.exception("M-Pesa callback processing failed")
        return CALLBACK_ACK
    if outcome is not None and not outcome.duplicate:
        logger.info("Callback %s settled as %s", outcome.correlation_id, outcome.status.value)
    return CALLBACK_ACK


@router.post("/connect", response_model=ConnectResponse)
def connect(
    payload: ConnectRequest,
    db: Session = Depends(get_db),
    ledger: SessionLedger = Depends(get_ledger),
):
    session = ledger.get_active_session(db, payload.session_token)
    if session is None:
        raise HTTPException(status_code=401, detail="Invalid or expired session")
    return ConnectResponse(message="Connected successfully", session=_summary(session))


@router.get("/session/{token}", response_model=SessionSummary)
def session_info(
    token: str,
    db: Session = Depends(get_db),
    ledger: SessionLedger = Depends(get_ledger),
):
    # Resolves lazy expiry first so a stale row never reads as active.
    ledger.get_active_session(db, token)
    session = ledger.get_by_token(db, token)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return _summary(session)
