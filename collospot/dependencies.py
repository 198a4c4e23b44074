import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from collospot.core.database import get_db
from collospot.core.security import decode_token
from collospot.models import ADMIN_ROLES, User
from collospot.services.container import Services
from collospot.services.reconciler import PaymentReconciler
from collospot.services.sessions import SessionLedger


bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = decode_token(credentials.credentials)
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token")
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token")

    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role not in ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_reconciler(request: Request) -> PaymentReconciler:
    return get_services(request).reconciler


def get_ledger(request: Request) -> SessionLedger:
    return get_services(request).ledger


def get_router_gateway(request: Request):
    return get_services(request).router
