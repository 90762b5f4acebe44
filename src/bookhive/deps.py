from typing import Any, AsyncGenerator, Dict, Optional
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from bookhive.config import settings
from bookhive.db import SessionLocal
from bookhive.email.client import Mailer, build_mailer
from bookhive.actions.auth import InvalidToken, verify_admin_token

bearer_scheme = HTTPBearer(auto_error=False)

async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session

def get_mailer(request: Request) -> Mailer:
    mailer = getattr(request.app.state, "mailer", None)
    if mailer is None:
        mailer = build_mailer(settings)
        request.app.state.mailer = mailer
    return mailer

def require_admin(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> Dict[str, Any]:
    if credentials is None:
        raise HTTPException(401, "Authorization header missing")
    try:
        return verify_admin_token(credentials.credentials)
    except InvalidToken as e:
        raise HTTPException(401, str(e))
