# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g


ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"


def require_actor(f):
    """
    Require an authenticated actor forwarded by the identity gateway.

    The gateway authenticates the caller and enforces role policy; this
    service only records who acted. Sets:
    - g.actor_id: opaque actor identifier (REQUIRED)
    - g.actor_role: role name, informational (may be None)

    Returns 401 when X-Actor-Id is missing.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor_id = (request.headers.get(ACTOR_ID_HEADER) or "").strip()
        if not actor_id:
            return jsonify({"error": f"{ACTOR_ID_HEADER} header required"}), 401

        g.actor_id = actor_id
        g.actor_role = (request.headers.get(ACTOR_ROLE_HEADER) or "").strip() or None

        return f(*args, **kwargs)

    return decorated_function
