from fastapi import HTTPException, Request
from jose import JWTError, jwt
import logging
import httpx

logger = logging.getLogger("voicehire.auth")


async def _verify_with_supabase_async(settings, token: str) -> str | None:
    """Ask Supabase Auth who owns the token; None when it cannot say."""
    if not settings.supabase_ready():
        return None

    try:
        async with httpx.AsyncClient(timeout=6.0) as client:
            response = await client.get(
                f"{settings.supabase_url.rstrip('/')}/auth/v1/user",
                headers={"Authorization": f"Bearer {token}", "apikey": settings.supabase_service_key},
            )
        response.raise_for_status()
        user = response.json()
    except httpx.HTTPError as exc:
        logger.warning("HR token verification via Supabase failed: %s", exc)
        return None
    except ValueError:
        return None

    user_id = user.get("id") if isinstance(user, dict) else None
    return str(user_id) if user_id else None


def _claims_from_secret(settings, token: str) -> dict:
    try:
        return jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
    except JWTError:
        raise HTTPException(401, "Invalid token")


def _unverified_dev_claims(settings, token: str) -> dict:
    if settings.environment == "production":
        raise HTTPException(500, "SUPABASE_JWT_SECRET is not configured")
    if not settings.allow_unverified_jwt_dev:
        raise HTTPException(
            401,
            "HR token cannot be verified; configure SUPABASE_JWT_SECRET or set ALLOW_UNVERIFIED_JWT_DEV=true",
        )
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        raise HTTPException(401, "Invalid token")
    logger.warning("ALLOW_UNVERIFIED_JWT_DEV enabled; trusting unverified HR token claims")
    return claims


async def resolve_user_id_from_token_async(settings, token: str) -> str:
    # order: shared secret, then Supabase Auth, then the development escape hatch
    if settings.supabase_jwt_secret:
        claims = _claims_from_secret(settings, token)
    else:
        user_id = await _verify_with_supabase_async(settings, token)
        claims = {"sub": user_id} if user_id else _unverified_dev_claims(settings, token)

    subject = (claims or {}).get("sub")
    if not subject:
        raise HTTPException(401, "Invalid token")
    return str(subject)


async def get_hr_user_id(request: Request) -> str:
    header = request.headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise HTTPException(401, "Unauthorized")
    return await resolve_user_id_from_token_async(request.app.state.context.settings, token.strip())
