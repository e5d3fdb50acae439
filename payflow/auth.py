from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header
from jose import JWTError, jwt

from payflow.config import Settings, get_settings
from payflow.errors import AuthenticationError


@dataclass
class Caller:
    id: str
    email: Optional[str] = None


def decode_caller(token: str, settings: Settings) -> Caller:
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise AuthenticationError()
    subject = claims.get("sub")
    if not subject:
        raise AuthenticationError()
    return Caller(id=str(subject), email=claims.get("email"))


def verify_token(authorization: str = Header(None), settings: Settings = Depends(get_settings)) -> Caller:
    if not authorization or not settings.jwt_secret:
        raise AuthenticationError()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError()
    return decode_caller(token.strip(), settings)
