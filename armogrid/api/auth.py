# backend/armogrid/api/auth.py

from datetime import datetime, timedelta, timezone
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from jose import JWTError, jwt
from pydantic import BaseModel, Field

from armogrid.api.deps import get_admin_tokens, get_iot_client
from armogrid.core.config import settings
from armogrid.services.iot_client import ACCOUNT_ADMIN, ACCOUNT_USER, IotClient, IotClientError, hash_password
from armogrid.services.token_cache import AdminTokenCache

logger = logging.getLogger(__name__)
router = APIRouter()

# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------

def now_utc():
    return datetime.now(timezone.utc)

# JWT config
JWT_SECRET = settings.SECRET_KEY
JWT_ALG = settings.ALGORITHM or "HS256"
ACCESS_EXPIRE_HOURS = int(settings.ACCESS_TOKEN_EXPIRE_HOURS or 24)

def create_access_token(username: str, role: str = "user", user_type: int = ACCOUNT_USER) -> str:
    exp = now_utc() + timedelta(hours=ACCESS_EXPIRE_HOURS)
    payload = {"sub": username, "username": username, "role": role, "userType": user_type, "exp": exp}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)

def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

def _extract_bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Authorization header")
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Authorization header")
    return parts[1].strip()

# -------------------------------------------------------------------
# Schemas
# -------------------------------------------------------------------

class LoginIn(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    # 0 = admin account, 1 = customer account
    type: int = Field(default=ACCOUNT_USER, ge=0, le=1)

class TokenOut(BaseModel):
    success: bool = True
    access_token: str
    token_type: str = "bearer"
    token: str
    user: dict

# -------------------------------------------------------------------
# Auth dependencies
# -------------------------------------------------------------------

async def get_current_user_dep(request: Request) -> dict:
    token = _extract_bearer_token(request.headers.get("Authorization"))
    payload = decode_access_token(token)
    username = payload.get("sub")
    if not username:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return {
        "username": username,
        "role": payload.get("role", "user"),
        "userType": payload.get("userType", ACCOUNT_USER),
    }

async def admin_required(user=Depends(get_current_user_dep)):
    if user.get("role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin privileges required")
    return user

# -------------------------------------------------------------------
# Routes
# -------------------------------------------------------------------

@router.post("/login", response_model=TokenOut)
async def login(
    payload: LoginIn,
    client: IotClient = Depends(get_iot_client),
    tokens: AdminTokenCache = Depends(get_admin_tokens),
):
    username = payload.username.strip()

    try:
        result = await client.login(username, hash_password(payload.password), payload.type)
    except IotClientError as e:
        logger.error(f"[Login] IoT platform unreachable: {e}")
        raise HTTPException(status_code=502, detail="Meter platform unavailable")

    if not result.ok:
        logger.warning(f"[Login] Rejected for {username}: {result.message}")
        raise HTTPException(status_code=401, detail=result.message or "Invalid username or password")

    role = "admin" if payload.type == ACCOUNT_ADMIN else "user"
    if payload.type == ACCOUNT_ADMIN:
        # an admin login doubles as a fresh platform token for admin-only calls
        tokens.seed(result.data)

    token = create_access_token(username=username, role=role, user_type=payload.type)
    logger.info(f"[Login] {username} logged in as {role}")

    return {
        "success": True,
        "access_token": token,
        "token": token,
        "token_type": "bearer",
        "user": {"username": username, "role": role, "userType": payload.type},
    }

@router.get("/me")
async def me(user=Depends(get_current_user_dep)):
    return {"success": True, "user": user}
