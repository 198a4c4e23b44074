from fastapi import APIRouter
from collospot.api.v1.endpoints import admin, public

router = APIRouter()

router.include_router(public.router, prefix="/public", tags=["public"])
router.include_router(admin.router, prefix="/admin", tags=["admin"])
