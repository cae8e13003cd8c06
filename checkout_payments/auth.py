from fastapi import Header, HTTPException
from jose import JWTError, jwt

from checkout_payments.config import get_settings


def _decode(authorization: str | None) -> dict:
    secret = get_settings().jwt_secret
    try:
        scheme, token = (authorization or "").split()
        if scheme.lower() != "bearer" or not secret:
            raise ValueError("unsupported scheme")
        return jwt.decode(token, secret, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def verify_token(authorization: str | None = Header(None)):
    return _decode(authorization)


def optional_customer(authorization: str | None = Header(None)) -> str | None:
    """Buyer identity for checkout. Anonymous checkout is allowed."""
    if not authorization:
        return None
    return _decode(authorization).get("sub")
