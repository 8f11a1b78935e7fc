from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from typing import List, Optional
import jwt
from datetime import datetime, timedelta, timezone
from exam_engine.core.config import settings

class TokenData(BaseModel):
    sub: str
    roles: List[str]

bearer = HTTPBearer()
optional_bearer = HTTPBearer(auto_error=False)

def create_token(user_id: str, roles: List[str], ttl_minutes: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    ttl = ttl_minutes or settings.ACCESS_TOKEN_TTL_MINUTES
    payload = {"sub": user_id, "roles": roles, "iat": int(now.timestamp()), "exp": int((now + timedelta(minutes=ttl)).timestamp())}
    return jwt.encode(payload, settings.APP_SECRET.get_secret_value(), algorithm="HS256")

def _decode(token: str) -> TokenData:
    try:
        payload = jwt.decode(token, settings.APP_SECRET.get_secret_value(), algorithms=["HS256"])
        return TokenData(sub=payload["sub"], roles=payload.get("roles", []))
    except (jwt.PyJWTError, KeyError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

def get_current_user(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> TokenData:
    return _decode(creds.credentials)

def get_optional_user(creds: Optional[HTTPAuthorizationCredentials] = Depends(optional_bearer)) -> Optional[TokenData]:
    """Identity for endpoints that also serve anonymous practice attempts."""
    if creds is None:
        return None
    return _decode(creds.credentials)

def require_roles(*required: str):
    def checker(user: TokenData = Depends(get_current_user)):
        roles = set(user.roles)
        if not roles.intersection(set(required)):
            raise HTTPException(status_code=403, detail="Insufficient role")
        return user
    return checker
