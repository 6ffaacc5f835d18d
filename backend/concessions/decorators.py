# Overview: Request decorators for API routes (bearer auth, roles, theater scope).

from functools import wraps

from flask import g, jsonify, request

from .errors import AuthError, ForbiddenError
from .models.auth import ROLE_SUPER_ADMIN
from .services import session_service


def _is_authenticated() -> bool:
    return hasattr(g, "current_user") and hasattr(g, "session_context")


def _is_super_admin() -> bool:
    return _is_authenticated() and ROLE_SUPER_ADMIN in g.roles


def bearer_token(*, allow_query: bool = False) -> str | None:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1].strip() or None
    if allow_query:
        # EventSource cannot send headers
        return (request.args.get("token") or "").strip() or None
    return None


def _authenticate(f, *, allow_query: bool):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = bearer_token(allow_query=allow_query)
        if token is None:
            return jsonify(AuthError("Authentication required").to_dict()), 401
        try:
            context = session_service.validate_session(token)
        except AuthError as e:
            return jsonify(e.to_dict()), 401

        g.current_user = context.user
        g.session_context = context
        g.theater_id = context.theater_id
        g.roles = context.roles
        return f(*args, **kwargs)

    return decorated_function


def require_auth(f):
    """
    Require a valid bearer token and establish the session context.

    Sets g.current_user, g.session_context, g.theater_id (None for super
    admins) and g.roles. Returns 401 with kind "auth" otherwise.
    """
    return _authenticate(f, allow_query=False)


def require_stream_auth(f):
    """require_auth that also accepts ?token= for server-push streams."""
    return _authenticate(f, allow_query=True)


def require_role(*roles):
    """Require any of the given roles. Super admins always pass."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify(AuthError("Authentication required").to_dict()), 401
            if _is_super_admin() or any(role in g.roles for role in roles):
                return f(*args, **kwargs)
            error = ForbiddenError(
                "Permission denied",
                {"requiredRoles": list(roles)},
            )
            return jsonify(error.to_dict()), 403

        return decorated_function
    return decorator


def ensure_theater_access(theater_id: int) -> None:
    """
    Raise ForbiddenError unless the session is bound to `theater_id`.

    Super admins may act on any theater.
    """
    if _is_super_admin():
        return
    if getattr(g, "theater_id", None) != theater_id:
        raise ForbiddenError(
            "Session is not bound to this theater",
            {"theaterId": theater_id},
        )
