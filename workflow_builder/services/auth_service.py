from typing import Any, Dict, Optional

import httpx
from fastapi import HTTPException, status

from workflow_builder.core.config import settings
from workflow_builder.core.logging import get_logger

logger = get_logger(__name__)


def _unavailable(detail: str = "Authentication service unavailable") -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


class AuthService:
    """
    Resolves the caller behind a bearer token. Identity is owned by the
    auth service; this service only asks it who the token belongs to.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: float = 10.0):
        self.me_url = f"{(base_url or settings.AUTH_SERVICE_URL).rstrip('/')}/me"
        self.timeout = timeout

    async def verify_token(self, token: str) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(self.me_url, headers={"Authorization": f"Bearer {token}"})
        except httpx.TimeoutException:
            logger.error(f"Timeout verifying token against {self.me_url}")
            raise _unavailable("Authentication service timeout")
        except httpx.RequestError as e:
            logger.error(f"Could not reach auth service at {self.me_url}: {e}")
            raise _unavailable()

        if response.status_code in (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
        if response.status_code != status.HTTP_200_OK:
            logger.error(f"Auth service error: {response.status_code} - {response.text}")
            raise _unavailable()

        user = response.json()
        if not user.get("id"):
            logger.error("Auth service returned a user without an id")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
        return user


auth_service = AuthService()
