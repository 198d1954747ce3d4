"""
Web module - Flask transport for the device authority.
"""

from devicebind.web.app import build_app_from_env, create_app, require_auth, shutdown_app, status_for

__all__ = ["build_app_from_env", "create_app", "require_auth", "shutdown_app", "status_for"]
