from fastapi import Depends, HTTPException, Query, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from firebase_admin import auth
from typing import Optional
import asyncio, logging

logger = logging.getLogger(__name__)

security = HTTPBearer()


async def _verify(id_token: str) -> dict:
    # verify_id_token is blocking (it may fetch Google's public keys)
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, auth.verify_id_token, id_token)


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Verify the Firebase ID token and return the decoded claims."""
    try:
        decoded_token = await _verify(credentials.credentials)
        logger.info(f"Token verified for UID: {decoded_token['uid']}")
        return decoded_token
    except Exception as e:
        logger.error(f"Token verification failed: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_socket_user(token: Optional[str] = Query(None)) -> Optional[dict]:
    """WebSocket variant: the token rides in the query string. None when absent or invalid."""
    if not token:
        logger.warning("WebSocket connection without token")
        return None
    try:
        return await _verify(token)
    except Exception as e:
        logger.error(f"WebSocket token verification failed: {str(e)}")
        return None
