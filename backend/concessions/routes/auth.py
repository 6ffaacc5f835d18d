# backend/concessions/routes/auth.py
"""
Authentication API routes.

Login returns an opaque bearer token bound to the user's theater and
role set. Tokens are stored hashed and expire after SESSION_TTL_HOURS.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import bearer_token, require_auth
from ..errors import AuthError, PipelineError
from ..extensions import db
from ..services import auth_service, session_service
from ..time_utils import to_utc_z


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/login")
def login_route():
    try:
        data = request.get_json(silent=True) or {}
        username = data.get("username")
        password = data.get("password")
        if not username or not password:
            return jsonify({"error": "username and password required", "kind": "validation"}), 400

        try:
            user = auth_service.authenticate(username, password)
        except AuthError as e:
            current_app.logger.warning("login failed: username=%s", username)
            return jsonify(e.to_dict()), 401

        session, token = session_service.create_session(user)
        db.session.commit()
        current_app.logger.info("login: user_id=%s theater_id=%s", user.id, user.theater_id)
        return jsonify({
            "token": token,
            "expires_at": to_utc_z(session.expires_at),
            "user": user.to_dict(),
            "theaterId": session.theater_id,
            "roles": list(session.roles or []),
        }), 200

    except PipelineError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Login failed")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
@require_auth
def logout_route():
    session_service.revoke_session(bearer_token())
    db.session.commit()
    return jsonify({"message": "Logged out"}), 200


@auth_bp.get("/me")
@require_auth
def me_route():
    context = g.session_context
    return jsonify({
        "user": context.user.to_dict(),
        "theaterId": context.theater_id,
        "roles": context.roles,
        "expires_at": to_utc_z(context.session.expires_at),
    }), 200
