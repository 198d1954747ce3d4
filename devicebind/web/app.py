"""
DeviceBind Web API
==================
Flask transport for the device authority.

Every route is a thin translation between JSON and the core: the
authority decides, this module renders. Errors are rendered from
DeviceBindError.to_dict() with the status of their category.
"""

from __future__ import annotations

import atexit
import logging
import os
from datetime import timedelta
from functools import wraps
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, Flask, current_app, g, jsonify, request

from devicebind import __version__
from devicebind.core.auth.accounts import AccountManager
from devicebind.core.auth.argon2_auth import Argon2Hasher
from devicebind.core.auth.authority import DeviceAuthority
from devicebind.core.auth.device_hash_processor import DeviceHashProcessor
from devicebind.core.auth.janitor import TokenJanitor
from devicebind.core.auth.tokens import TokenSigner
from devicebind.core.config import DeviceBindConfig, ServerSecrets
from devicebind.core.errors import (
    DeviceBindError,
    ErrorCategory,
    ErrorCode,
    TokenError,
    ValidationError,
)
from devicebind.core.logging import configure_from_config
from devicebind.db import open_store


EXTENSION_KEY = "devicebind"
JANITOR_KEY = "devicebind.janitor"
STORE_KEY = "devicebind.store"

_CATEGORY_STATUS: Dict[ErrorCategory, int] = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.DEVICE_BINDING: 412,
    ErrorCategory.CONFLICT: 409,
    ErrorCategory.AUTHENTICATION: 401,
    ErrorCategory.TOKEN: 401,
    ErrorCategory.STORAGE: 503,
}

_CODE_STATUS: Dict[ErrorCode, int] = {
    ErrorCode.ACCOUNT_INACTIVE: 403,
    ErrorCode.ACCOUNT_NOT_FOUND: 404,
}

_log = logging.getLogger("devicebind.web")

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")
users_bp = Blueprint("users", __name__, url_prefix="/api/users")


def status_for(error: DeviceBindError) -> int:
    """HTTP status for a structured error."""
    return _CODE_STATUS.get(error.code, _CATEGORY_STATUS[error.category])


# ============================================================
# REQUEST HELPERS
# ============================================================

def _authority() -> DeviceAuthority:
    return current_app.extensions[EXTENSION_KEY]


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(ErrorCode.INVALID_INPUT, "Request body must be a JSON object")
    return data


def _bearer_token() -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise TokenError(ErrorCode.TOKEN_REQUIRED)
    return token.strip()


def require_auth(f: Callable[..., Any]) -> Callable[..., Any]:
    """Verify the bearer token; the session is available as g.session."""

    @wraps(f)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        token = _bearer_token()
        g.session = _authority().verify(token)
        g.token = token
        return f(*args, **kwargs)

    return wrapper


# ============================================================
# AUTHENTICATION ROUTES
# ============================================================

@auth_bp.route("/register", methods=["POST"])
def register():
    data = _json_body()
    result = _authority().register(
        username=data.get("username"),
        email=data.get("email"),
        password=data.get("password"),
        device_hash=data.get("deviceHash"),
        device_timestamp=data.get("deviceTimestamp"),
    )
    return jsonify({"message": "User registered successfully", **result.to_dict()}), 201


@auth_bp.route("/login", methods=["POST"])
def login():
    data = _json_body()
    result = _authority().login(
        login=data.get("username"),
        password=data.get("password"),
        device_hash=data.get("deviceHash"),
        device_timestamp=data.get("deviceTimestamp"),
    )
    return jsonify({"message": "Login successful", **result.to_dict()})


@auth_bp.route("/logout", methods=["POST"])
@require_auth
def logout():
    _authority().logout(g.token)
    return jsonify({"message": "Logout successful"})


@auth_bp.route("/logout-other-devices", methods=["POST"])
def logout_other_devices():
    """
    Token authenticated: keep the caller's device, end every other.
    Credential authenticated (no live token on this device): body
    carries username, password and deviceHash.
    """
    authority = _authority()
    data = _json_body()

    if request.headers.get("Authorization"):
        session = authority.verify(_bearer_token())
        if data.get("deviceHash") is not None:
            authority.processor.validate_format(data["deviceHash"])
        count = authority.logout_from_other_devices(session.account_id, session.processed_hash)
    else:
        count = authority.evict_other_devices(
            login=data.get("username"),
            password=data.get("password"),
            device_hash=data.get("deviceHash"),
            device_timestamp=data.get("deviceTimestamp"),
        )

    return jsonify({
        "message": "Successfully logged out from other devices",
        "invalidatedSessions": count,
    })


@auth_bp.route("/force-logout", methods=["POST"])
@require_auth
def force_logout():
    count = _authority().force_logout(g.session.account_id)
    return jsonify({
        "message": "Force logout successful - all devices logged out",
        "invalidatedSessions": count,
    })


@auth_bp.route("/sessions", methods=["GET"])
@require_auth
def sessions():
    summaries = _authority().get_active_sessions(
        g.session.account_id,
        current_processed_hash=g.session.processed_hash,
    )
    return jsonify({"sessions": [s.to_dict() for s in summaries]})


@auth_bp.route("/verify", methods=["GET"])
@require_auth
def verify():
    claims = g.session.claims
    return jsonify({
        "valid": True,
        "user": g.session.account.to_public_dict(),
        "tokenData": {
            "userId": claims.account_id,
            "issuedAt": claims.issued_at.isoformat(),
            "expiresAt": claims.expires_at.isoformat(),
        },
    })


@auth_bp.route("/deactivate", methods=["POST"])
@require_auth
def deactivate():
    _authority().accounts.deactivate(g.session.account_id)
    return jsonify({"message": "Account deactivated successfully"})


@auth_bp.route("/reactivate", methods=["POST"])
def reactivate():
    data = _json_body()
    account = _authority().accounts.reactivate(data.get("username"), data.get("password"))
    return jsonify({
        "message": "Account reactivated successfully",
        "user": account.to_public_dict(),
    })


@auth_bp.route("/health", methods=["GET"])
def health():
    return jsonify({
        "status": "healthy",
        "version": __version__,
        "devices": _authority().device_stats(),
    })


# ============================================================
# USER ROUTES
# ============================================================

@users_bp.route("/profile", methods=["GET"])
@require_auth
def get_profile():
    return jsonify({"user": g.session.account.to_public_dict()})


@users_bp.route("/profile", methods=["PUT"])
@require_auth
def update_profile():
    data = _json_body()
    if "email" not in data:
        raise ValidationError(ErrorCode.INVALID_INPUT, "Nothing to update", details={"field": "email"})
    account = _authority().accounts.update_email(g.session.account_id, data["email"])
    return jsonify({"message": "Profile updated successfully", "user": account.to_public_dict()})


@users_bp.route("/password", methods=["PUT"])
@require_auth
def change_password():
    data = _json_body()
    _authority().accounts.change_password(
        g.session.account_id,
        data.get("currentPassword"),
        data.get("newPassword"),
    )
    return jsonify({"message": "Password changed successfully. Please log in again."})


@users_bp.route("/device/info", methods=["GET"])
@require_auth
def device_info():
    return jsonify(_authority().device_info(g.session.account_id))


@users_bp.route("/account", methods=["DELETE"])
@require_auth
def delete_account():
    data = _json_body()
    _authority().accounts.delete(g.session.account_id, data.get("password"))
    return jsonify({"message": "Account deleted successfully"})


# ============================================================
# APP FACTORY
# ============================================================

def _add_cors_headers(response):
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
    response.headers["Access-Control-Max-Age"] = "3600"
    return response


def _handle_devicebind_error(error: DeviceBindError):
    status = status_for(error)
    if status >= 500:
        _log.error(f"{error.code.value} on {request.method} {request.path}")
    else:
        _log.info(f"{error.code.value} on {request.method} {request.path}")
    return jsonify(error.to_dict()), status


def create_app(authority: DeviceAuthority, janitor: Optional[TokenJanitor] = None) -> Flask:
    """
    Build the Flask application around an authority.

    Args:
        authority: Fully wired DeviceAuthority
        janitor: Optional token janitor, started here
    """
    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = 64 * 1024
    app.extensions[EXTENSION_KEY] = authority

    app.register_blueprint(auth_bp)
    app.register_blueprint(users_bp)
    app.register_error_handler(DeviceBindError, _handle_devicebind_error)
    app.after_request(_add_cors_headers)

    @app.route("/api/<path:path>", methods=["OPTIONS"])
    def handle_options(path):
        return _add_cors_headers(app.make_response(""))

    if janitor is not None:
        app.extensions[JANITOR_KEY] = janitor
        janitor.start()

    return app


def shutdown_app(app: Flask) -> None:
    """Stop the janitor and close the store attached to app. Safe to call twice."""
    janitor = app.extensions.pop(JANITOR_KEY, None)
    if janitor is not None:
        janitor.stop()
    store = app.extensions.pop(STORE_KEY, None)
    if store is not None:
        store.close()
        _log.info("DeviceBind API storage closed")


def build_app_from_env() -> Flask:
    """
    Wire configuration, logging, storage and the authority from the
    environment.

    Raises:
        RuntimeError: If server secrets are missing
    """
    config = DeviceBindConfig.load()
    server_secrets = ServerSecrets.from_env()
    config.ensure_directories()
    configure_from_config(config.logging, config.paths.log_dir)

    store = open_store(config.database_url(), config.database.busy_timeout_seconds)
    store.initialize()

    authority_config = config.authority
    accounts = AccountManager(store, Argon2Hasher())
    authority = DeviceAuthority(
        store=store,
        accounts=accounts,
        signer=TokenSigner(
            server_secrets.token_secret,
            lifetime=timedelta(seconds=authority_config.token_lifetime_seconds),
        ),
        processor=DeviceHashProcessor(
            server_secrets.device_salt,
            min_length=authority_config.device_hash_min_length,
            max_length=authority_config.device_hash_max_length,
            freshness_window=timedelta(seconds=authority_config.freshness_window_seconds),
            require_timestamp=authority_config.require_timestamp,
        ),
    )
    janitor = TokenJanitor(
        store,
        interval=authority_config.purge_interval_seconds,
        retention=timedelta(days=authority_config.token_retention_days),
    )

    _log.info(f"DeviceBind API starting (config {config.config_hash})")
    app = create_app(authority, janitor=janitor)
    app.extensions[STORE_KEY] = store
    atexit.register(shutdown_app, app)
    return app


if __name__ == "__main__":
    build_app_from_env().run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)))
