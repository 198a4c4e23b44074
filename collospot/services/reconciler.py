import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from collospot.core.exceptions import (
    CallbackParseError,
    DuplicateResource,
    GatewayError,
    GatewayRejected,
    GatewayUnavailable,
    NotFound,
    ValidationError,
)
from collospot.core.logging import mask_phone
from collospot.models import HotspotSession, Payment, PaymentStatus, Plan, SessionStatus, User, UserRole
from collospot.services.mpesa import ParsedResult, normalize_phone
from collospot.services.sessions import SessionLedger, utcnow
from collospot.services.sms import build_payment_confirmation


logger = logging.getLogger(__name__)


@dataclass
class InitiatedPayment:
    correlation_id: str
    customer_message: str


@dataclass
class CallbackOutcome:
    correlation_id: str
    status: PaymentStatus
    duplicate: bool = False
    session_token: str | None = None


@dataclass
class PaymentStatusView:
    status: PaymentStatus
    amount: Decimal
    session_token: str | None = None


@dataclass
class JanitorReport:
    abandoned: int = 0
    completed: int = 0
    failed: int = 0
    still_pending: int = 0


def _account_reference(payment_id: int) -> str:
    # Daraja caps AccountReference at 12 characters.
    return f"CSPOT{payment_id:07d}"


class PaymentReconciler:
    """
    Payment state machine: PENDING -> COMPLETED | FAILED | CANCELLED, never back.

    A payment leaves PENDING through one conditional UPDATE guarded by
    ``status = 'PENDING'``; whoever loses that race (a redelivered callback, the
    janitor's status query, an admin cancel) observes the terminal state and
    changes nothing. The winning COMPLETED transition creates at most one
    session in the same transaction. Router provisioning and SMS happen after
    commit and never undo billing state.
    """

    def __init__(
        self,
        gateway,
        ledger: SessionLedger,
        notifier,
        *,
        session_factory=None,
        abandon_after: timedelta = timedelta(minutes=15),
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.notifier = notifier
        self.session_factory = session_factory
        self.abandon_after = abandon_after

    def get_or_create_user(self, db: Session, phone: str) -> User:
        user = db.query(User).filter(User.phone == phone).first()
        if user is not None:
            return user
        try:
            with db.begin_nested():
                user = User(phone=phone, role=UserRole.CUSTOMER, is_active=True)
                db.add(user)
        except IntegrityError:
            # A concurrent request registered the same phone first.
            user = db.query(User).filter(User.phone == phone).first()
            if user is None:
                raise
            return user
        logger.info("Registered customer %s", mask_phone(phone))
        return user

    def initiate_payment(self, db: Session, phone: str, plan_id: int, amount) -> InitiatedPayment:
        try:
            amount = Decimal(str(amount))
        except InvalidOperation:
            raise ValidationError("Valid amount required")
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        msisdn = normalize_phone(phone)

        plan = db.get(Plan, plan_id)
        if plan is None or not plan.is_active:
            raise NotFound("Plan not found or inactive")
        if amount != Decimal(plan.price):
            raise ValidationError("Amount does not match the plan price")

        user = self.get_or_create_user(db, msisdn)
        if not user.is_active:
            raise ValidationError("User is inactive")

        payment = Payment(user_id=user.id, plan_id=plan.id, amount=amount, status=PaymentStatus.PENDING)
        db.add(payment)
        db.commit()
        db.refresh(payment)

        try:
            push = self.gateway.initiate_push(msisdn, amount, _account_reference(payment.id), f"Payment for {plan.name}")
        except GatewayRejected as exc:
            # No callback will ever come for a rejected push.
            db.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING)
                .values(status=PaymentStatus.FAILED, result_desc=exc.message[:255])
            )
            db.commit()
            logger.warning("STK push rejected for payment %s: %s", payment.id, exc.message)
            raise
        except GatewayUnavailable as exc:
            logger.warning("STK push for payment %s not sent, left for the janitor: %s", payment.id, exc.message)
            raise

        payment_id = payment.id
        payment.checkout_request_id = push.correlation_id
        payment.merchant_request_id = push.merchant_id
        db.commit()
        logger.info("Payment %s awaiting callback checkout=%s", payment_id, push.correlation_id)
        return InitiatedPayment(correlation_id=push.correlation_id, customer_message=push.customer_message)

    def handle_callback(self, db: Session, raw_payload) -> CallbackOutcome | None:
        try:
            parsed = self.gateway.parse_callback(raw_payload)
        except CallbackParseError as exc:
            logger.warning("Dropping unparseable M-Pesa callback: %s", exc.message)
            return None

        payment = db.query(Payment).filter(Payment.checkout_request_id == parsed.correlation_id).first()
        if payment is None:
            logger.warning("Callback for unknown CheckoutRequestID %s ignored", parsed.correlation_id)
            return None
        if payment.status.is_terminal:
            logger.info("Duplicate callback for %s, payment already %s", parsed.correlation_id, payment.status.value)
            return self._outcome_for(db, payment, duplicate=True)

        if parsed.success and parsed.amount is not None and parsed.amount != Decimal(payment.amount):
            logger.warning(
                "Callback amount %s differs from payment %s amount %s; provider outcome kept",
                parsed.amount,
                payment.id,
                payment.amount,
            )
        return self._apply_result(db, payment, parsed)

    def handle_callback_detached(self, raw_payload) -> CallbackOutcome | None:
        """Entry point for callbacks delivered outside a request (sandbox timer)."""
        db = self.session_factory()
        try:
            return self.handle_callback(db, raw_payload)
        finally:
            db.close()

    def _apply_result(self, db: Session, payment: Payment, parsed: ParsedResult) -> CallbackOutcome:
        to_status = PaymentStatus.COMPLETED if parsed.success else PaymentStatus.FAILED
        values = {
            "status": to_status,
            "result_code": str(parsed.result_code),
            "result_desc": parsed.result_desc or None,
        }
        if parsed.receipt_number:
            values["receipt_number"] = parsed.receipt_number

        session = None
        created = False
        try:
            result = db.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING)
                .values(**values)
            )
            if result.rowcount != 1:
                db.rollback()
                db.refresh(payment)
                logger.info("Payment %s already settled as %s by a concurrent writer", payment.id, payment.status.value)
                return self._outcome_for(db, payment, duplicate=True)
            if to_status == PaymentStatus.COMPLETED:
                session, created = self._open_session(db, payment)
            db.commit()
        except Exception:
            db.rollback()
            self.ledger.discard_deferred_revokes(db)
            raise
        self.ledger.release_deferred_revokes(db)
        db.refresh(payment)
        logger.info("Payment %s %s (receipt=%s)", payment.id, to_status.value, parsed.receipt_number)

        if session is not None:
            if created:
                self.ledger.provision(db, session)
            self._notify_completed(payment, session)
        return CallbackOutcome(
            correlation_id=parsed.correlation_id,
            status=to_status,
            session_token=session.token if session is not None else None,
        )

    def _open_session(self, db: Session, payment: Payment) -> tuple[HotspotSession | None, bool]:
        existing = self.ledger.get_active_for_pair(db, payment.user_id, payment.plan_id)
        if existing is not None:
            # Neither extended nor stacked.
            logger.info("User %s already has active session %s for plan %s", payment.user_id, existing.id, payment.plan_id)
            return existing, False
        try:
            session = self.ledger.create_session(db, payment.user_id, payment.plan_id, payment_id=payment.id, commit=False)
        except DuplicateResource:
            return self.ledger.get_active_for_pair(db, payment.user_id, payment.plan_id), False
        return session, True

    def _notify_completed(self, payment: Payment, session: HotspotSession) -> None:
        try:
            message = build_payment_confirmation(payment.plan.name, session.end_time, session.token)
            self.notifier.send(payment.user.phone, message)
        except Exception:
            logger.exception("Could not queue confirmation SMS for payment %s", payment.id)

    def _session_token_for(self, db: Session, payment: Payment) -> str | None:
        session = db.query(HotspotSession).filter(HotspotSession.payment_id == payment.id).first()
        if session is None:
            session = (
                db.query(HotspotSession)
                .filter(
                    HotspotSession.user_id == payment.user_id,
                    HotspotSession.plan_id == payment.plan_id,
                    HotspotSession.status == SessionStatus.ACTIVE,
                )
                .first()
            )
        return session.token if session is not None else None

    def _outcome_for(self, db: Session, payment: Payment, duplicate: bool) -> CallbackOutcome:
        token = self._session_token_for(db, payment) if payment.status == PaymentStatus.COMPLETED else None
        return CallbackOutcome(
            correlation_id=payment.checkout_request_id,
            status=payment.status,
            duplicate=duplicate,
            session_token=token,
        )

    def poll_status(self, db: Session, correlation_id: str) -> PaymentStatusView:
        payment = db.query(Payment).filter(Payment.checkout_request_id == correlation_id).first()
        if payment is None:
            raise NotFound("Payment not found")
        token = self._session_token_for(db, payment) if payment.status == PaymentStatus.COMPLETED else None
        return PaymentStatusView(status=payment.status, amount=payment.amount, session_token=token)

    def cancel_payment(self, db: Session, payment_id: int) -> Payment:
        payment = db.get(Payment, payment_id)
        if payment is None:
            raise NotFound("Payment not found")
        result = db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
            .values(status=PaymentStatus.CANCELLED, result_desc="Cancelled by administrator")
        )
        db.commit()
        db.refresh(payment)
        if result.rowcount != 1:
            raise ValidationError(f"Payment is already {payment.status.value.lower()}")
        logger.info("Payment %s cancelled", payment_id)
        return payment

    def reconcile_stale_payments(self, db: Session, now: datetime | None = None, limit: int = 100) -> JanitorReport:
        """
        Resolve PENDING payments older than the abandon window. A push the gateway
        never accepted cannot be called back and is failed; an accepted push is
        settled from the provider's query result, or left alone while in flight.
        """
        report = JanitorReport()
        cutoff = (now or utcnow()) - self.abandon_after

        result = db.execute(
            update(Payment)
            .where(
                Payment.status == PaymentStatus.PENDING,
                Payment.checkout_request_id.is_(None),
                Payment.created_at < cutoff,
            )
            .values(status=PaymentStatus.FAILED, result_desc="Abandoned: push was never accepted by the gateway")
            .execution_options(synchronize_session=False)
        )
        db.commit()
        report.abandoned = result.rowcount or 0

        stale = (
            db.query(Payment)
            .filter(
                Payment.status == PaymentStatus.PENDING,
                Payment.checkout_request_id.isnot(None),
                Payment.created_at < cutoff,
            )
            .order_by(Payment.id)
            .limit(limit)
            .all()
        )
        for payment in stale:
            try:
                parsed = self.gateway.query_push(payment.checkout_request_id)
            except GatewayError as exc:
                logger.warning("Status query for payment %s failed: %s", payment.id, exc.message)
                report.still_pending += 1
                continue
            if parsed is None:
                report.still_pending += 1
                continue
            parsed.correlation_id = payment.checkout_request_id
            outcome = self._apply_result(db, payment, parsed)
            if outcome.duplicate:
                continue
            if outcome.status == PaymentStatus.COMPLETED:
                report.completed += 1
            else:
                report.failed += 1

        if report.abandoned or report.completed or report.failed:
            logger.info(
                "Janitor: abandoned=%s completed=%s failed=%s still_pending=%s",
                report.abandoned,
                report.completed,
                report.failed,
                report.still_pending,
            )
        return report
