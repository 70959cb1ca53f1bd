"""
Identity for the storefront.

Email/password accounts with mandatory email verification before the first
login, password reset, and display-name updates. The rest of the service only
asks three questions of this module: who is calling, is their email verified,
and are they an administrator.
"""

import secrets
from datetime import timedelta
from typing import Any, Dict, Optional

import structlog
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from motor.motor_asyncio import AsyncIOMotorDatabase
from passlib.context import CryptContext

from storefront.database import AUTH_TOKEN_MAX_AGE, get_db, new_id, now, serialize
from storefront.settings import Settings

logger = structlog.get_logger(__name__)

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

bearer = HTTPBearer(auto_error=False)

VERIFY_EMAIL = "verify_email"
RESET_PASSWORD = "reset_password"

TOKEN_TTL = {
    VERIFY_EMAIL: AUTH_TOKEN_MAX_AGE,
    RESET_PASSWORD: timedelta(hours=1),
}


class AuthError(Exception):
    def __init__(self, message: str, status_code: int = 401):
        self.status_code = status_code
        super().__init__(message)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize(user)
    out.pop("password_hash", None)
    return out


async def _issue_token(db: AsyncIOMotorDatabase, user_id: str, purpose: str) -> str:
    token = secrets.token_urlsafe(32)
    await db["auth_tokens"].insert_one({"_id": token, "user_id": user_id, "purpose": purpose, "created_at": now()})
    return token


async def _consume_token(db: AsyncIOMotorDatabase, token: str, purpose: str) -> str:
    doc = await db["auth_tokens"].find_one_and_delete(
        {"_id": token, "purpose": purpose, "created_at": {"$gte": now() - TOKEN_TTL[purpose]}}
    )
    if not doc:
        raise AuthError("Invalid or expired token", status_code=400)
    return doc["user_id"]


async def signup(db: AsyncIOMotorDatabase, settings: Settings, email: str, password: str,
                 display_name: Optional[str] = None) -> Dict[str, Any]:
    email = email.lower()
    if await db["users"].find_one({"email": email}):
        raise AuthError("Email already registered", status_code=400)
    user = {
        "_id": new_id(),
        "email": email,
        "display_name": display_name or email.split("@")[0],
        "photo_url": "",
        "password_hash": hash_password(password),
        "email_verified": False,
        "is_admin": email in settings.admin_emails,
        "created_at": now(),
    }
    await db["users"].insert_one(user)
    token = await _issue_token(db, user["_id"], VERIFY_EMAIL)
    # delivery is handled outside the service; the link is logged for operators
    logger.info("verification_email_queued", user_id=user["_id"], email=email, link=f"/verify-email?token={token}")
    return public_user(user)


async def verify_email(db: AsyncIOMotorDatabase, token: str) -> Dict[str, Any]:
    user_id = await _consume_token(db, token, VERIFY_EMAIL)
    await db["users"].update_one({"_id": user_id}, {"$set": {"email_verified": True}})
    logger.info("email_verified", user_id=user_id)
    return public_user(await db["users"].find_one({"_id": user_id}))


async def login(db: AsyncIOMotorDatabase, email: str, password: str) -> Dict[str, Any]:
    user = await db["users"].find_one({"email": email.lower()})
    if not user or not verify_password(password, user.get("password_hash", "")):
        raise AuthError("Invalid credentials")
    if not user.get("email_verified"):
        raise AuthError("Please verify your email before logging in.", status_code=403)
    token = secrets.token_urlsafe(32)
    await db["sessions"].insert_one({"_id": token, "user_id": user["_id"], "created_at": now()})
    logger.info("login", user_id=user["_id"])
    return {"user_id": user["_id"], "display_name": user["display_name"], "email": user["email"], "token": token}


async def logout(db: AsyncIOMotorDatabase, token: str) -> None:
    await db["sessions"].delete_one({"_id": token})


async def request_password_reset(db: AsyncIOMotorDatabase, email: str) -> None:
    user = await db["users"].find_one({"email": email.lower()})
    if not user:
        return
    token = await _issue_token(db, user["_id"], RESET_PASSWORD)
    logger.info("password_reset_queued", user_id=user["_id"], link=f"/reset-password?token={token}")


async def reset_password(db: AsyncIOMotorDatabase, token: str, password: str) -> None:
    user_id = await _consume_token(db, token, RESET_PASSWORD)
    await db["users"].update_one({"_id": user_id}, {"$set": {"password_hash": hash_password(password)}})
    # existing sessions do not survive a reset
    await db["sessions"].delete_many({"user_id": user_id})
    logger.info("password_reset", user_id=user_id)


async def update_profile(db: AsyncIOMotorDatabase, user_id: str, display_name: str) -> Dict[str, Any]:
    await db["users"].update_one({"_id": user_id}, {"$set": {"display_name": display_name}})
    return public_user(await db["users"].find_one({"_id": user_id}))


# ---------- Dependencies ----------

async def optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: AsyncIOMotorDatabase = Depends(get_db),
) -> Optional[Dict[str, Any]]:
    if credentials is None:
        return None
    session = await db["sessions"].find_one({"_id": credentials.credentials})
    if not session:
        return None
    user = await db["users"].find_one({"_id": session["user_id"]})
    if not user or not user.get("email_verified"):
        return None
    user = public_user(user)
    user["token"] = credentials.credentials
    return user


async def current_user(user: Optional[Dict[str, Any]] = Depends(optional_user)) -> Dict[str, Any]:
    if user is None:
        raise HTTPException(status_code=401, detail="Not logged in")
    return user


async def admin_user(user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    if not user.get("is_admin"):
        raise HTTPException(status_code=403, detail="Admin access required")
    return user

