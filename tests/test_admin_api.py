from contextlib import contextmanager
from decimal import Decimal

from fastapi.testclient import TestClient

from collospot.core.database import get_db
from collospot.core.security import create_access_token
from collospot.dependencies import get_ledger, get_reconciler, get_router_gateway
from collospot.main import app
from collospot.models import HotspotSession, Payment, PaymentStatus, SessionStatus, User, UserRole
from collospot.services.router import ConnectionInfo


@contextmanager
def _client(db, reconciler, ledger, router):
    app.dependency_overrides.clear()

    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_router_gateway] = lambda: router
    try:
        with TestClient(app) as client:
            yield client
    finally:
        app.dependency_overrides.clear()


def _user(db, phone, role):
    user = User(phone=phone, role=role, is_active=True)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _auth(user):
    token = create_access_token(str(user.id), user.role.value)
    return {"Authorization": f"Bearer {token}"}


def _paid_session(db, reconciler, plan, stk_callback, phone="0712345678", receipt="R1"):
    result = reconciler.initiate_payment(db, phone, plan.id, Decimal("100"))
    reconciler.handle_callback(db, stk_callback(result.correlation_id, receipt=receipt))
    return db.query(HotspotSession).filter(HotspotSession.payment.has(checkout_request_id=result.correlation_id)).one()


def test_admin_endpoints_require_admin(db, reconciler, ledger, router):
    customer = _user(db, "254711000000", UserRole.CUSTOMER)

    with _client(db, reconciler, ledger, router) as client:
        anonymous = client.get("/api/v1/admin/sessions")
        bad_token = client.get("/api/v1/admin/sessions", headers={"Authorization": "Bearer not-a-jwt"})
        forbidden = client.get("/api/v1/admin/dashboard", headers=_auth(customer))

    assert anonymous.status_code == 401
    assert bad_token.status_code == 401
    assert forbidden.status_code == 403


def test_inactive_admin_is_rejected(db, reconciler, ledger, router):
    admin = _user(db, "254700000001", UserRole.ADMIN)
    admin.is_active = False
    db.commit()

    with _client(db, reconciler, ledger, router) as client:
        res = client.get("/api/v1/admin/sessions", headers=_auth(admin))

    assert res.status_code == 401


def test_list_and_filter_sessions(db, reconciler, ledger, router, plan, stk_callback):
    admin = _user(db, "254700000001", UserRole.SUPER_ADMIN)
    first = _paid_session(db, reconciler, plan, stk_callback, phone="0712345678", receipt="R1")
    second = _paid_session(db, reconciler, plan, stk_callback, phone="0722000111", receipt="R2")
    ledger.terminate_session(db, first.id)

    with _client(db, reconciler, ledger, router) as client:
        everything = client.get("/api/v1/admin/sessions", headers=_auth(admin))
        active = client.get("/api/v1/admin/sessions?status=active", headers=_auth(admin))
        invalid = client.get("/api/v1/admin/sessions?status=paused", headers=_auth(admin))

    assert everything.json()["total"] == 2
    assert [row["id"] for row in active.json()["items"]] == [second.id]
    assert active.json()["items"][0]["status"] == "ACTIVE"
    assert invalid.status_code == 400


def test_terminate_session(db, reconciler, ledger, router, plan, stk_callback):
    admin = _user(db, "254700000001", UserRole.ADMIN)
    session = _paid_session(db, reconciler, plan, stk_callback)

    with _client(db, reconciler, ledger, router) as client:
        res = client.post(f"/api/v1/admin/sessions/{session.id}/terminate", headers=_auth(admin))
        again = client.post(f"/api/v1/admin/sessions/{session.id}/terminate", headers=_auth(admin))
        missing = client.post("/api/v1/admin/sessions/9999/terminate", headers=_auth(admin))
        connect = client.post("/api/v1/public/connect", json={"session_token": session.token})

    assert res.status_code == 200
    assert res.json()["status"] == "TERMINATED"
    assert again.status_code == 200
    assert router.revoked == [session.token]
    assert missing.status_code == 404
    assert connect.status_code == 401


def test_cancel_payment(db, reconciler, ledger, router, plan):
    admin = _user(db, "254700000001", UserRole.ADMIN)
    reconciler.initiate_payment(db, "0712345678", plan.id, Decimal("100"))
    payment = db.query(Payment).one()

    with _client(db, reconciler, ledger, router) as client:
        res = client.post(f"/api/v1/admin/payments/{payment.id}/cancel", headers=_auth(admin))
        again = client.post(f"/api/v1/admin/payments/{payment.id}/cancel", headers=_auth(admin))

    assert res.status_code == 200
    assert res.json()["status"] == "CANCELLED"
    assert again.status_code == 400
    db.refresh(payment)
    assert payment.status == PaymentStatus.CANCELLED


def test_router_status_records_usage(db, reconciler, ledger, router, plan, stk_callback):
    admin = _user(db, "254700000001", UserRole.ADMIN)
    session = _paid_session(db, reconciler, plan, stk_callback)
    router.connections = [
        ConnectionInfo(session_id="*A1", username=session.token, ip_address="10.5.50.10", bytes_in=4096, bytes_out=1024, uptime="3m")
    ]

    with _client(db, reconciler, ledger, router) as client:
        res = client.get("/api/v1/admin/router/status", headers=_auth(admin))

    body = res.json()
    assert body["reachable"] is True
    assert body["active_users"] == 1
    assert body["users"][0]["ip_address"] == "10.5.50.10"
    db.refresh(session)
    assert session.data_used == 5120


def test_router_status_when_unreachable(db, reconciler, ledger, router):
    admin = _user(db, "254700000001", UserRole.ADMIN)
    router.fail = True

    with _client(db, reconciler, ledger, router) as client:
        res = client.get("/api/v1/admin/router/status", headers=_auth(admin))

    assert res.status_code == 200
    assert res.json()["reachable"] is False
    assert res.json()["active_users"] == 0


def test_dashboard_counts(db, reconciler, ledger, router, plan, stk_callback):
    admin = _user(db, "254700000001", UserRole.ADMIN)
    _paid_session(db, reconciler, plan, stk_callback, phone="0712345678", receipt="R1")
    reconciler.initiate_payment(db, "0722000111", plan.id, Decimal("100"))

    with _client(db, reconciler, ledger, router) as client:
        res = client.get("/api/v1/admin/dashboard", headers=_auth(admin))

    body = res.json()
    assert res.status_code == 200
    assert body["total_users"] == 2
    assert body["active_users"] == 2
    assert Decimal(str(body["total_revenue"])) == Decimal("100")
    assert body["active_sessions"] == 1
    assert body["total_sessions"] == 1
    assert body["pending_payments"] == 1
    assert db.query(HotspotSession).filter(HotspotSession.status == SessionStatus.ACTIVE).count() == 1
