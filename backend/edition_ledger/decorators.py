# Overview: Request decorators for API routes.

import hmac
from functools import wraps

from flask import current_app, jsonify, request


def require_api_token(f):
    """
    Require the shared ledger API token as a Bearer credential.

    When LEDGER_API_TOKEN is unset (local development) every request is
    let through.

    Returns 401 if:
    - No Authorization header
    - Token does not match
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get("LEDGER_API_TOKEN")
        if not expected:
            return f(*args, **kwargs)

        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]
        if not hmac.compare_digest(token.encode(), expected.encode()):
            return jsonify({"error": "Invalid token"}), 401

        return f(*args, **kwargs)

    return decorated_function
