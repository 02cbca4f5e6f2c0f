from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError
import structlog

from signoff.domain.actor import Actor
from signoff.services.auth_service import verify_access_token

logger = structlog.get_logger()

security = HTTPBearer()


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "error": {
                "code": "AUTH_TOKEN_INVALID",
                "message": message,
            }
        },
        headers={"WWW-Authenticate": "Bearer"},
    )


def actor_from_token(token: str) -> Actor:
    """Verify a JWT and build the Actor it describes. Raises JWTError or ValueError."""
    payload = verify_access_token(token)
    return Actor.from_claims(
        {
            "user_id": payload["sub"],
            "organisation_id": payload["organisation_id"],
            "role": payload["role"],
            "branch_id": payload.get("branch_id"),
            "email": payload.get("email"),
        }
    )


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    """FastAPI dependency: extract and verify JWT, return the calling Actor."""
    try:
        actor = actor_from_token(credentials.credentials)
    except JWTError as e:
        logger.warning("auth_token_invalid", error=str(e))
        raise _unauthorized("Invalid or expired token")
    except ValueError as e:
        # well-formed token carrying an unknown role or malformed id
        logger.warning("auth_claims_invalid", error=str(e))
        raise _unauthorized("Token claims are invalid")

    structlog.contextvars.bind_contextvars(
        user_id=str(actor.user_id), organisation_id=str(actor.organisation_id)
    )
    return actor
