"""
services/auth/router.py
Session endpoints for tokens minted by the identity provider.
Implements: who-am-I and Logout (JWT deny-list).
"""

from fastapi import APIRouter, Depends

from config.redis_client import RedisChannels, get_redis
from shared.middleware.auth import TokenData, get_current_user, get_token_data
from shared.models.models import User
from shared.schemas.schemas import MessageResponse, UserResponse
from shared.utils.security import get_token_remaining_ttl

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post("/logout", response_model=MessageResponse, summary="Logout user")
async def logout(
    current_user: User = Depends(get_current_user),
    token_data: TokenData = Depends(get_token_data),
    redis=Depends(get_redis),
):
    """Add the access token's JTI to the Redis deny-list until it expires."""
    ttl = get_token_remaining_ttl(token_data.raw)
    if ttl > 0:
        await RedisChannels(redis).revoke_token(token_data.jti, ttl)
    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=UserResponse, summary="Get current user")
async def get_me(current_user: User = Depends(get_current_user)):
    """Returns the authenticated user's profile and roles."""
    return UserResponse.model_validate(current_user)
