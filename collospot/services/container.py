import logging
from dataclasses import dataclass
from datetime import timedelta

from collospot.core.config import Settings
from collospot.services.mpesa import MpesaGateway, SandboxMpesaGateway
from collospot.services.reconciler import PaymentReconciler
from collospot.services.router import MikrotikGateway
from collospot.services.sessions import SessionLedger
from collospot.services.sms import SmsNotifier
from collospot.services.sweeper import MaintenanceSweeper


logger = logging.getLogger(__name__)


@dataclass
class Services:
    gateway: object
    router: object
    notifier: SmsNotifier
    ledger: SessionLedger
    reconciler: PaymentReconciler
    sweeper: MaintenanceSweeper


def build_services(settings: Settings, session_factory) -> Services:
    """Wire every collaborator once at process start."""
    if settings.mpesa_simulate:
        gateway = SandboxMpesaGateway(delay_seconds=settings.mpesa_simulate_delay_seconds)
        logger.warning("MPESA_SIMULATE is on: payments are simulated, no money moves.")
    else:
        gateway = MpesaGateway(settings)
    router = MikrotikGateway(settings)
    notifier = SmsNotifier(settings)
    ledger = SessionLedger(router)
    reconciler = PaymentReconciler(
        gateway,
        ledger,
        notifier,
        session_factory=session_factory,
        abandon_after=timedelta(minutes=settings.payment_abandon_minutes),
    )
    if isinstance(gateway, SandboxMpesaGateway):
        gateway.bind(reconciler.handle_callback_detached)
    sweeper = MaintenanceSweeper(
        session_factory,
        ledger,
        reconciler,
        interval_seconds=settings.session_sweep_interval_seconds,
    )
    return Services(
        gateway=gateway,
        router=router,
        notifier=notifier,
        ledger=ledger,
        reconciler=reconciler,
        sweeper=sweeper,
    )
