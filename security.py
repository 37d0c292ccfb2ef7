import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import bcrypt
from bson import ObjectId
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pymongo.database import Database

import config
from database import USER_ROLES, USERS, get_db, is_object_id
from errors import AuthenticationError, AuthorizationError
from logging_config import set_user_id

logger = logging.getLogger(__name__)

# Bearer token security; missing headers are reported as 401 below
bearer = HTTPBearer(auto_error=False)


def get_password_hash(password: str) -> str:
    # Bcrypt has a 72 byte limit
    password_bytes = password.encode("utf-8")[:72]
    hashed = bcrypt.hashpw(password_bytes, bcrypt.gensalt(rounds=config.BCRYPT_ROUNDS))
    return hashed.decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    password_bytes = plain_password.encode("utf-8")[:72]
    return bcrypt.checkpw(password_bytes, hashed_password.encode("utf-8"))


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token for a user id"""
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {"sub": user_id, "exp": expire, "type": "access"}
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
    except JWTError:
        raise AuthenticationError("Invalid auth token")
    if payload.get("type") != "access" or not is_object_id(payload.get("sub")):
        raise AuthenticationError("Invalid auth token")
    return payload


# ---------- Roles ----------
def get_roles(db: Database, user_id: str) -> List[str]:
    return [r["role"] for r in db[USER_ROLES].find({"user_id": user_id})]


def has_role(db: Database, user_id: str, role: str) -> bool:
    """Single capability predicate; a user may hold several roles"""
    return db[USER_ROLES].count_documents({"user_id": user_id, "role": role}, limit=1) > 0


def get_users_by_role(db: Database, role: str) -> List[str]:
    return [r["user_id"] for r in db[USER_ROLES].find({"role": role})]


def assign_role(db: Database, user_id: str, role: str) -> None:
    db[USER_ROLES].update_one(
        {"user_id": user_id, "role": role},
        {"$setOnInsert": {"user_id": user_id, "role": role}},
        upsert=True,
    )


# ---------- Login ----------
def authenticate(db: Database, email: str, password: str) -> str:
    """Return the user id for valid credentials"""
    user = db[USERS].find_one({"email": email.lower()})
    if not user or not verify_password(password, user["password_hash"]):
        logger.warning(f"Failed login for {email}")
        raise AuthenticationError("Invalid email or password")
    logger.info(f"User {user['_id']} logged in")
    return str(user["_id"])


# ---------- Dependencies ----------
async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    if credentials is None:
        raise AuthenticationError("Missing Authorization header")
    payload = decode_token(credentials.credentials)
    user_id = payload["sub"]
    user = db[USERS].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise AuthenticationError("Invalid auth token")
    set_user_id(user_id)
    return {"id": user_id, "email": user["email"], "name": user.get("name"), "roles": get_roles(db, user_id)}


def require_role(role: str):
    """Dependency factory: the caller must hold `role`"""

    async def checker(
        user: Dict[str, Any] = Depends(get_current_user),
        db: Database = Depends(get_db),
    ) -> Dict[str, Any]:
        if not has_role(db, user["id"], role):
            raise AuthorizationError(f"Forbidden: {role} access required")
        return user

    return checker
