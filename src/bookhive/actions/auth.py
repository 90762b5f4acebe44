from __future__ import annotations
import logging, uuid
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

import bcrypt
import jwt
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import select

from bookhive.config import settings
from bookhive.models import AdminSecret
from bookhive.actions.common import ok, err, store_error, utcnow
from bookhive.actions.activity import record_activity, DEFAULT_ADMIN, SYSTEM_ACTOR

logger = logging.getLogger(__name__)

ADMIN_PASSWORD_KEY = "admin_password"
JWT_ALGORITHM = "HS256"

class InvalidToken(Exception):
    """Raised when a bearer token is missing, malformed, expired or not an admin token."""

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")

def _password_matches(password: str, value_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), value_hash.encode("utf-8"))
    except ValueError:
        # malformed hash or a password over bcrypt's 72-byte limit
        return False

def create_admin_token(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    payload = {
        "sub": DEFAULT_ADMIN,
        "role": "admin",
        "iat": now,
        "exp": now + timedelta(minutes=settings.ADMIN_TOKEN_TTL_MINUTES),
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(payload, settings.ADMIN_JWT_SECRET, algorithm=JWT_ALGORITHM)

def verify_admin_token(token: Optional[str]) -> Dict[str, Any]:
    if not token:
        raise InvalidToken("Authorization header missing")
    try:
        claims = jwt.decode(
            token,
            settings.ADMIN_JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            options={"require": ["exp", "iat", "sub"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise InvalidToken("Session expired") from e
    except jwt.PyJWTError as e:
        raise InvalidToken("Invalid token") from e
    if claims.get("role") != "admin":
        raise InvalidToken("Invalid token")
    return claims

async def _get_secret(session: AsyncSession) -> Optional[AdminSecret]:
    r = await session.execute(select(AdminSecret).where(AdminSecret.key == ADMIN_PASSWORD_KEY))
    return r.scalar_one_or_none()

async def set_admin_password(session: AsyncSession, *, password: str, actor: str = SYSTEM_ACTOR) -> Dict[str, Any]:
    if not password:
        return err("Password is required.", code="MISSING_PASSWORD")
    try:
        secret = await _get_secret(session)
        if secret:
            secret.value_hash = hash_password(password)
            action = "Admin password rotated"
        else:
            secret = AdminSecret(key=ADMIN_PASSWORD_KEY, value_hash=hash_password(password))
            session.add(secret)
            action = "Admin password provisioned"
        record_activity(session, actor=actor, action=action, entity_type="admin_secret")
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("[auth] Failed to store admin password")
        return store_error()
    return ok("Admin password stored.")

async def ensure_admin_secret(session: AsyncSession, password: Optional[str]) -> bool:
    """Seed the admin secret from configuration when none has been provisioned."""
    if not password or await _get_secret(session):
        return False
    r = await set_admin_password(session, password=password)
    if r["ok"]:
        logger.info("[auth] Admin password seeded from configuration")
    return r["ok"]

async def _commit_login_entry(session: AsyncSession) -> None:
    try:
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("[auth] Could not record login attempt")

async def check_admin_password(
    session: AsyncSession,
    *,
    password: Optional[str],
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    if not password:
        return err("Password is required", code="MISSING_PASSWORD")
    try:
        secret = await _get_secret(session)
    except SQLAlchemyError:
        logger.exception("[auth] Error fetching admin password")
        return store_error()
    if not secret:
        logger.error("[auth] No admin password has been provisioned")
        return err("Admin authentication not configured", code="AUTH_NOT_CONFIGURED")

    now = utcnow()
    if not _password_matches(password, secret.value_hash):
        record_activity(
            session, actor=DEFAULT_ADMIN, action="Failed admin login attempt",
            details={"timestamp": now.isoformat(), "ip": ip_address or "unknown"},
            ip_address=ip_address, user_agent=user_agent,
        )
        await _commit_login_entry(session)
        logger.warning("[auth] Failed admin login attempt from %s", ip_address or "unknown")
        return err("Invalid password", code="INVALID_PASSWORD")

    token = create_admin_token(now)
    record_activity(
        session, actor=DEFAULT_ADMIN, action="Admin login successful",
        details={"timestamp": now.isoformat(), "ip": ip_address or "unknown", "token": token[:16] + "..."},
        ip_address=ip_address, user_agent=user_agent,
    )
    await _commit_login_entry(session)
    return ok("Authentication successful", token=token, expires_in=settings.ADMIN_TOKEN_TTL_MINUTES * 60)
