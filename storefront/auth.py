from fastapi import Header, HTTPException
from jose import JWTError, jwt

from storefront.config import settings
from storefront.logging_config import get_logger

logger = get_logger(__name__)


def verify_token(authorization: str = Header(...)):
    """Operator endpoints require an HS256 bearer token."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        claims = jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except (ValueError, JWTError):
        logger.info("operator_auth_rejected")
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return claims.get("sub", "operator")
