"""Bearer-token authentication and privilege guards for the JSON API."""
from __future__ import annotations

import logging
from functools import wraps
from typing import Callable, Optional

import click
from flask import current_app, g, request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from storefront.config import Config
from storefront.database import get_db
from storefront.errors import AuthorizationError, ForbiddenError
from storefront.models import Privilege, User
from storefront.observability import increment_counter

logger = logging.getLogger(__name__)


def _serializer() -> URLSafeTimedSerializer:
    secret = current_app.config.get("SECRET_KEY") or Config.SECRET_KEY
    salt = current_app.config.get("TOKEN_SALT") or Config.TOKEN_SALT
    return URLSafeTimedSerializer(secret, salt=salt)


def generate_token(user: User) -> str:
    return _serializer().dumps({"user_id": user.userID})


def load_user_from_token(token: str, db=None) -> User:
    max_age = current_app.config.get("TOKEN_MAX_AGE_SECONDS") or Config.TOKEN_MAX_AGE_SECONDS
    try:
        payload = _serializer().loads(token, max_age=max_age)
    except SignatureExpired:
        raise AuthorizationError("Token has expired") from None
    except BadSignature:
        raise AuthorizationError("Invalid token") from None

    user_id = payload.get("user_id") if isinstance(payload, dict) else None
    if user_id is None:
        raise AuthorizationError("Invalid token")
    user = (db or get_db()).get(User, user_id)
    if user is None:
        raise AuthorizationError("User no longer exists")
    return user


def _bearer_token() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthorizationError("Authorization header must be 'Bearer <token>'")
    return token.strip()


def require_auth(*privileges: Privilege, optional: bool = False) -> Callable:
    """
    Resolve the bearer token into ``g.current_user`` and check privileges.

    A role holding ALL satisfies every privilege. Requiring ALL itself only
    needs an authenticated user. With ``optional=True`` a missing header is
    allowed, but a present and invalid one is still rejected.
    """
    required = [Privilege(p) for p in privileges if Privilege(p) != Privilege.ALL]

    def decorator(view: Callable) -> Callable:
        @wraps(view)
        def wrapper(*args, **kwargs):
            token = _bearer_token()
            if token is None:
                if optional:
                    g.current_user = None
                    return view(*args, **kwargs)
                increment_counter("auth_failures_total", labels={"reason": "missing"})
                raise AuthorizationError("Authentication required")

            try:
                user = load_user_from_token(token)
            except AuthorizationError:
                increment_counter("auth_failures_total", labels={"reason": "invalid"})
                raise
            g.current_user = user

            missing = [p.value for p in required if not user.has_privilege(p)]
            if missing:
                increment_counter("auth_failures_total", labels={"reason": "forbidden"})
                logger.warning(
                    "User %s lacks privileges",
                    user.userID,
                    extra={"missing": missing},
                )
                raise ForbiddenError(
                    "You do not have permission to perform this action",
                    details={"missing_privileges": missing},
                )
            return view(*args, **kwargs)

        return wrapper

    return decorator


def current_user() -> Optional[User]:
    return getattr(g, "current_user", None)


@click.command("create-token")
@click.argument("email")
def create_token_command(email: str) -> None:
    """Print a bearer token for the user registered under EMAIL."""
    user = get_db().query(User).filter(User.email == email).first()
    if user is None:
        raise click.ClickException(f"No user with email {email}")
    click.echo(generate_token(user))


__all__ = [
    "generate_token",
    "load_user_from_token",
    "require_auth",
    "current_user",
    "create_token_command",
]
