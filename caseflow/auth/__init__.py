"""
CaseFlow — Authentication & Roles
JWT tokens, password hashing, reviewer identity for the audit trail.

With CASEFLOW_AUTH_ENABLED=false (the default) requests are attributed from the
X-User-Name / X-User-Role headers so the engine always has an actor.
"""
import uuid
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt as pyjwt
from fastapi import HTTPException, Request

from caseflow.config import (
    AUTH_ENABLED, DEFAULT_ROLE, JWT_ALGORITHM, JWT_EXPIRY_HOURS, JWT_SECRET, ROLE_MATRIX,
)


# ============================================================
# PASSWORD HASHING
# ============================================================
def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode(), hashed.encode())


# ============================================================
# JWT
# ============================================================
def create_jwt(user: dict) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user["id"], "email": user["email"], "name": user["name"],
        "role": user["role"],
        "exp": now + timedelta(hours=JWT_EXPIRY_HOURS),
        "iat": now,
    }
    return pyjwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_jwt(token: str) -> dict:
    try:
        return pyjwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(401, "Token expired")
    except pyjwt.InvalidTokenError:
        raise HTTPException(401, "Invalid token")


# ============================================================
# USERS
# ============================================================
def public_user(user: dict) -> dict:
    return {k: v for k, v in user.items() if k != "passwordHash"}


def register_user(store, email: str, password: str, name: str, role: str = DEFAULT_ROLE) -> dict:
    email = (email or "").strip().lower()
    if not email or not password:
        raise HTTPException(422, "Email and password are required")
    if len(password) < 8:
        raise HTTPException(422, "Password must be at least 8 characters")
    if role not in ROLE_MATRIX:
        raise HTTPException(422, f"Unknown role '{role}'. Must be one of: {sorted(ROLE_MATRIX)}")
    if any(u["email"] == email for u in store.get_users()):
        raise HTTPException(409, "Email already registered")
    user = {
        "id": "USR-" + str(uuid.uuid4())[:8].upper(),
        "email": email,
        "name": (name or email.split("@")[0]).strip(),
        "role": role,
        "passwordHash": hash_password(password),
        "createdAt": datetime.now().isoformat(),
    }
    store.add_user(user)
    return public_user(user)


def authenticate(store, email: str, password: str) -> dict:
    email = (email or "").strip().lower()
    for u in store.get_users():
        if u["email"] == email and verify_password(password or "", u["passwordHash"]):
            return public_user(u)
    raise HTTPException(401, "Invalid email or password")


# ============================================================
# REQUEST HELPERS
# ============================================================
def _user_from_request(request: Request) -> dict:
    """User from a Bearer JWT, or an empty dict when there is none.
    A present but bad token raises 401."""
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        payload = decode_jwt(auth[7:])
        return {"id": payload["sub"], "email": payload["email"],
                "name": payload["name"], "role": payload["role"], "authenticated": True}
    return {}


def _header_user(request: Request) -> dict:
    role = request.headers.get("X-User-Role", DEFAULT_ROLE).lower()
    if role not in ROLE_MATRIX:
        role = DEFAULT_ROLE
    name = request.headers.get("X-User-Name", "").strip() or "anonymous"
    return {"id": name, "email": "", "name": name, "role": role, "authenticated": False}


async def get_current_user(request: Request) -> dict:
    """Dependency: the caller. JWT required only when auth is enabled."""
    user = _user_from_request(request)
    if user:
        return user
    if AUTH_ENABLED:
        raise HTTPException(401, "Authentication required")
    return _header_user(request)


def actor_name(user: dict) -> str:
    """Name recorded as `by` / reviewer in the audit trail."""
    return user["name"] if user.get("authenticated") else user["id"]


async def get_actor(request: Request) -> str:
    """Dependency: the audit actor for this request."""
    return actor_name(await get_current_user(request))


def require_role(min_level: int):
    """Dependency: require minimum role level."""
    async def checker(request: Request):
        user = await get_current_user(request)
        role_info = ROLE_MATRIX.get(user["role"], ROLE_MATRIX[DEFAULT_ROLE])
        if role_info["level"] < min_level:
            raise HTTPException(403, f"Requires role level {min_level}+. Your role: {user['role']}")
        return user
    return checker
