from flask import Blueprint, request, jsonify, session
import logging

import accounts
from permissions import require_login, allowed_actions
import models
from utils import error_response, log_success

logger = logging.getLogger(__name__)

bp = Blueprint('auth', __name__, url_prefix='/api/auth')


@bp.route('/login', methods=['POST'])
def login():
    """JSON login; stores the user id in the session cookie"""
    data = request.get_json(silent=True) or {}
    username = data.get('username')
    password = data.get('password')

    if not username or not password:
        return jsonify({'error': '請提供用戶名和密碼'}), 400

    try:
        user = accounts.authenticate(username, password)
    except Exception:
        return error_response('server', '登入失敗', status_code=500, log_context={'username': username})

    if not user:
        logger.warning(f"Failed login for username={username} from {request.remote_addr}")
        return jsonify({'error': '用戶名或密碼錯誤'}), 401

    session.clear()
    session.permanent = True
    session['user_id'] = user.id
    session['username'] = user.username
    session['role'] = user.role.value

    log_success('login', f"User {user.username} logged in")

    return jsonify({
        'success': True,
        'user': user.to_dict(),
        'permissions': sorted(action.value for action in allowed_actions(user.role)),
    })


@bp.route('/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'success': True, 'message': '登出成功'})


@bp.route('/user')
def current_user():
    user = require_login()
    if not isinstance(user, models.User):
        return user

    return jsonify({
        'user': user.to_dict(),
        'permissions': sorted(action.value for action in allowed_actions(user.role)),
    })


@bp.route('/change-password', methods=['POST'])
def change_password():
    user = require_login()
    if not isinstance(user, models.User):
        return user

    data = request.get_json(silent=True) or {}
    current_password = data.get('current_password') or ''
    new_password = data.get('new_password') or ''

    if new_password != data.get('confirm_password'):
        return error_response('validation', '新密碼與確認密碼不一致', field='confirm_password')

    try:
        accounts.change_own_password(user, current_password, new_password)
    except ValueError as e:
        return error_response('validation', str(e), log_context={'user_id': user.id})
    except Exception:
        return error_response('server', '無法變更密碼', status_code=500)

    return jsonify({'success': True, 'message': '密碼已變更'})
