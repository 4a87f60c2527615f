from dataclasses import dataclass

from fastapi import Header, HTTPException, Request

from crm_automation.db.session import SessionLocal
from crm_automation.services.engine import AutomationEngine


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@dataclass(frozen=True)
class TenantAccess:
    business_id: str
    user_id: str
    user_name: str | None = None


def get_tenant(
    x_business_id: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    x_user_name: str | None = Header(default=None),
) -> TenantAccess:
    """Identity forwarded by the authenticating gateway in front of this service."""
    business_id = (x_business_id or "").strip()
    user_id = (x_user_id or "").strip()
    if not business_id or not user_id:
        raise HTTPException(status_code=400, detail="X-Business-Id and X-User-Id headers are required")
    if len(business_id) > 36 or len(user_id) > 36:
        raise HTTPException(status_code=400, detail="Tenant identifiers must be at most 36 characters")
    return TenantAccess(
        business_id=business_id,
        user_id=user_id,
        user_name=(x_user_name or "").strip() or None,
    )


def get_engine(request: Request) -> AutomationEngine:
    engine = getattr(request.app.state, "automation_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Automation engine is not running")
    return engine
