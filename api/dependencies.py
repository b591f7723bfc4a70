"""
API依赖项 - 调用方身份与应用服务
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from application.services.payment_orchestrator import PaymentOrchestrator


ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Caller:
    """上游网关透传的调用方身份"""
    user_id: Optional[str]
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() == ADMIN_ROLE


async def get_orchestrator(request: Request) -> PaymentOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment service is not initialized",
        )
    return orchestrator


async def get_caller(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(default=None, alias="X-User-Role"),
) -> Caller:
    """读取调用方身份；普通用户必须携带 X-User-Id"""
    caller = Caller(user_id=x_user_id, role=x_user_role)
    if not caller.user_id and not caller.is_admin:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return caller
