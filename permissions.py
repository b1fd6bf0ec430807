"""
Role based permissions and request guards
"""
import enum
import logging

from flask import jsonify, session

import models

logger = logging.getLogger(__name__)


class Action(enum.Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    VOID = "void"
    EXPORT = "export"
    UPLOAD = "upload"
    MANAGE_USERS = "manage_users"


ROLE_PERMISSIONS = {
    models.UserRole.ADMIN.value: frozenset(Action),
    models.UserRole.OPERATOR.value: frozenset({
        Action.CREATE,
        Action.READ,
        Action.UPDATE,
        Action.VOID,
        Action.EXPORT,
    }),
}


def _role_value(role):
    return role.value if hasattr(role, 'value') else str(role)


def allowed_actions(role):
    """Actions granted to a role; unknown roles get none"""
    return ROLE_PERMISSIONS.get(_role_value(role), frozenset())


def has_permission(role, action):
    if not isinstance(action, Action):
        try:
            action = Action(action)
        except ValueError:
            return False
    return action in allowed_actions(role)


def check_permission(user, action):
    """Same as has_permission, but missing or inactive users are always denied"""
    if user is None or not user.active:
        return False
    return has_permission(user.role, action)


def require_login():
    if 'user_id' not in session:
        return jsonify({'error': '未登入'}), 401

    user = db_get_user(session['user_id'])
    if not user or not user.active:
        session.clear()
        return jsonify({'error': '用戶不存在或已停用'}), 401

    return user


def require_permission(action):
    """Resolve the session user and check the action, returning the user or an error response"""
    user = require_login()
    if not isinstance(user, models.User):
        return user

    if not check_permission(user, action):
        logger.warning(f"Permission denied: user={user.username} role={user.role.value} action={action.value}")
        return jsonify({'error': '權限不足'}), 403

    return user


def db_get_user(user_id):
    return models.db.session.get(models.User, user_id)
