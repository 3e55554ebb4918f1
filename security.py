import hashlib
import hmac
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pymongo.database import Database

from database import get_db
from errors import Forbidden, InvalidArgument, Unauthenticated
from schemas import CurrentUser
from settings import Settings, get_settings

JWT_ALG = "HS256"
TOKEN_COOKIE = "token"
PBKDF2_ROUNDS = 120_000


# ---------------------- Helpers ----------------------
def to_object_id(id_str: str, label: str = "id") -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise InvalidArgument(f"Invalid {label} format")


def hash_password(password: str) -> str:
    salt = os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, PBKDF2_ROUNDS)
    return f"{salt.hex()}${digest.hex()}"


def verify_password(password: str, hashed: str) -> bool:
    try:
        salt_hex, digest_hex = hashed.split("$", 1)
    except (AttributeError, ValueError):
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), bytes.fromhex(salt_hex), PBKDF2_ROUNDS)
    return hmac.compare_digest(digest.hex(), digest_hex)


# ---------------------- JWT ----------------------
def create_jwt(settings: Settings, account_id: str, role: str, expires_delta: Optional[timedelta] = None) -> str:
    now = datetime.now(timezone.utc)
    exp = now + (expires_delta or timedelta(days=settings.jwt_expires_days))
    return jwt.encode({"sub": account_id, "role": role, "iat": now, "exp": exp}, settings.jwt_secret, algorithm=JWT_ALG)


def decode_jwt(settings: Settings, token: str) -> Dict[str, Any]:
    # expired, tampered and malformed tokens all read as "not authenticated"
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[JWT_ALG])
    except JWTError:
        raise Unauthenticated("Invalid or expired token")


def resolve_account(database: Database, settings: Settings, token: Optional[str]) -> CurrentUser:
    """Turn a bearer credential into the account it was issued for."""
    if not token:
        raise Unauthenticated("Authorization required")
    payload = decode_jwt(settings, token)
    account_id = payload.get("sub")
    try:
        account = database["account"].find_one({"_id": ObjectId(account_id)})
    except (InvalidId, TypeError):
        raise Unauthenticated("Invalid or expired token")
    if not account:
        raise Unauthenticated("User not found")
    return CurrentUser(id=str(account["_id"]), role=account["role"], email=account["email"], name=account["name"])


# ---------------------- Dependencies ----------------------
bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    database: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> CurrentUser:
    # header wins over the same-site cookie
    token = creds.credentials if creds else request.cookies.get(TOKEN_COOKIE)
    return resolve_account(database, settings, token)


def get_optional_user(
    request: Request,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    database: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Optional[CurrentUser]:
    token = creds.credentials if creds else request.cookies.get(TOKEN_COOKIE)
    if not token:
        return None
    try:
        return resolve_account(database, settings, token)
    except Unauthenticated:
        # public routes serve a stale or foreign credential as anonymous
        return None


def require_role(*roles: str):
    def checker(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            raise Forbidden("Forbidden")
        return user
    return checker
