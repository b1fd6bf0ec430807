"""
User accounts: bcrypt password handling and admin user management
"""
import logging
from datetime import datetime

import bcrypt

from models import db, User, UserRole
from utils import record_audit, sanitize_input

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


def hash_password(password):
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def check_password(user, password):
    if not isinstance(password, str):
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), user.password_hash.encode('utf-8'))
    except ValueError:
        # malformed stored hash
        return False


def _validate_password(password):
    if not isinstance(password, str):
        raise ValueError('密碼格式錯誤')
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f'密碼至少需要 {MIN_PASSWORD_LENGTH} 個字元')


def authenticate(username, password):
    """Active user matching the credentials, or None"""
    user = User.query.filter_by(username=username, active=True).first()
    if not user or not check_password(user, password):
        return None

    user.last_login = datetime.utcnow()
    db.session.commit()
    return user


def create_user(username, password, display_name, role=UserRole.OPERATOR, active=True, created_by=None):
    """
    Create a user account

    Raises:
        ValueError: username taken, invalid role or weak password
    """
    username = sanitize_input(username, max_length=80)
    display_name = sanitize_input(display_name, max_length=100) or username
    if not username:
        raise ValueError('請輸入用戶名')

    _validate_password(password)

    if not isinstance(role, UserRole):
        try:
            role = UserRole(role)
        except ValueError:
            raise ValueError(f'未知的角色：{role}')

    if User.query.filter_by(username=username).first():
        raise ValueError('用戶名已存在')

    try:
        user = User(
            username=username,
            password_hash=hash_password(password),
            display_name=display_name,
            role=role,
            active=active,
        )
        db.session.add(user)
        db.session.flush()

        if created_by is not None:
            record_audit(created_by.id, 'CREATE_USER', 'user', user.id,
                         {'username': username, 'role': role.value})

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(f"User {username} created with role {role.value}")
    return user


def update_password(target_user_id, new_password, operator):
    """Set a new password for a user and audit who did it"""
    _validate_password(new_password)

    try:
        user = db.session.get(User, target_user_id)
        if not user:
            raise ValueError('用戶不存在')

        user.password_hash = hash_password(new_password)
        user.updated_at = datetime.utcnow()

        record_audit(operator.id, 'UPDATE_PASSWORD', 'user', user.id, {'target_user_id': user.id})
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return user


def change_own_password(user, current_password, new_password):
    if not check_password(user, current_password):
        raise ValueError('目前密碼不正確')
    if current_password == new_password:
        raise ValueError('新密碼不可與目前密碼相同')
    return update_password(user.id, new_password, user)


def toggle_user_status(target_user_id, admin):
    """
    Enable a disabled user or disable an active one

    Raises:
        ValueError: user missing, or an admin trying to disable themselves
    """
    try:
        user = db.session.get(User, target_user_id)
        if not user:
            raise ValueError('用戶不存在')
        if user.id == admin.id:
            raise ValueError('不可停用自己的帳號')

        previous_status = user.active
        user.active = not previous_status
        user.updated_at = datetime.utcnow()

        record_audit(
            admin.id,
            'DISABLE_USER' if previous_status else 'ENABLE_USER',
            'user',
            user.id,
            {'previous_status': previous_status}
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(f"User {user.username} {'disabled' if previous_status else 'enabled'} by {admin.username}")
    return user


def ensure_default_users():
    """Create the bootstrap admin and operator accounts when missing"""
    created = []
    defaults = [
        ('admin', 'admin123', '系統管理員', UserRole.ADMIN),
        ('operator', 'operator123', '測試操作員', UserRole.OPERATOR),
    ]
    for username, password, display_name, role in defaults:
        if not User.query.filter_by(username=username).first():
            create_user(username, password, display_name, role)
            created.append(username)
    return created
