"""
Authentication decorators and utilities.
Centralized auth for all routes.

Role Hierarchy (highest to lowest):
- admin: Maintain procedures, rules and library lists
- supervisor: Everything an inspector does, plus audit reports
- inspector: Validate observations, override flags with a reason
"""
from functools import wraps

from flask import session, jsonify


# Role hierarchy - higher index = more permissions
ROLE_HIERARCHY = {
    'inspector': 1,
    'supervisor': 2,
    'admin': 3
}


def get_role_level(role):
    """Get numeric level for role comparison."""
    return ROLE_HIERARCHY.get(role, 0)


def _unauthorized():
    return jsonify({'error': 'Authentication required'}), 401


def _forbidden():
    return jsonify({'error': 'Insufficient permissions'}), 403


def require_auth(f):
    """Require any authenticated user."""
    @wraps(f)
    def decorated(*args, **kwargs):
        if 'user_id' not in session:
            return _unauthorized()
        return f(*args, **kwargs)
    return decorated


def require_role(minimum_role):
    """
    Decorator factory for role-based access.
    Usage: @require_role('supervisor')
    """
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            if 'user_id' not in session:
                return _unauthorized()

            user_role = session.get('role', 'inspector')
            if get_role_level(user_role) < get_role_level(minimum_role):
                return _forbidden()
            return f(*args, **kwargs)
        return decorated
    return decorator


require_supervisor = require_role('supervisor')
require_admin = require_role('admin')


def get_current_user():
    """Get current user info from session."""
    if 'user_id' not in session:
        return None
    return {
        'id': session.get('user_id'),
        'name': session.get('user_name'),
        'role': session.get('role'),
    }
