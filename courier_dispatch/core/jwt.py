import logging
from typing import Optional
from jose import JWTError, jwt
from courier_dispatch.config.settings import Config

logger = logging.getLogger(__name__)


class JWTConfig:
    """Verifies bearer tokens minted by the marketplace auth service."""

    def __init__(self, config: Config):
        self.secret_key = config.SECRET_KEY
        self.algorithm = config.JWT_ALGORITHM

    def decode_access_token(self, token: str) -> Optional[dict]:
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError as e:
            logger.warning(f"Rejected access token: {str(e)}")
            return None

    def claims_from_header(self, auth_header: Optional[str]) -> Optional[dict]:
        if not auth_header or not auth_header.startswith("Bearer "):
            return None
        token = auth_header.split(" ", 1)[1]
        payload = self.decode_access_token(token)
        if not payload or "sub" not in payload:
            return None
        return payload
