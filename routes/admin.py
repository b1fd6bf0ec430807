from flask import Blueprint, request, jsonify
from datetime import date
import logging

import models
from models import db
import accounts
import ledger
from permissions import Action, require_permission
from utils import (
    error_response,
    validate_json_structure,
    get_system_settings,
    update_system_setting,
    log_success
)

logger = logging.getLogger(__name__)

bp = Blueprint('admin', __name__, url_prefix='/admin')


def require_admin():
    return require_permission(Action.MANAGE_USERS)


# User management

@bp.route('/users')
def users():
    user = require_admin()
    if not isinstance(user, models.User):
        return user

    all_users = models.User.query.order_by(models.User.created_at.desc()).all()
    return jsonify([u.to_dict() for u in all_users])


@bp.route('/users', methods=['POST'])
def create_user():
    user = require_admin()
    if not isinstance(user, models.User):
        return user

    data = request.get_json(silent=True)
    structure = validate_json_structure(data, ['username', 'password'], ['display_name', 'role', 'active'])
    if not structure['valid']:
        return error_response('validation', structure['message'])

    try:
        new_user = accounts.create_user(
            data['username'],
            data['password'],
            data.get('display_name') or data['username'],
            role=data.get('role', models.UserRole.OPERATOR.value),
            active=bool(data.get('active', True)),
            created_by=user
        )
    except ValueError as e:
        return error_response('validation', str(e), log_context={'username': data.get('username')})
    except Exception:
        return error_response('server', '無法創建用戶', status_code=500)

    return jsonify(new_user.to_dict()), 201


@bp.route('/users/<int:user_id>/toggle', methods=['POST'])
def toggle_user(user_id):
    user = require_admin()
    if not isinstance(user, models.User):
        return user

    try:
        target_user = accounts.toggle_user_status(user_id, user)
    except ValueError as e:
        return error_response('business', str(e), log_context={'target_user_id': user_id})
    except Exception:
        return error_response('server', '無法變更用戶狀態', status_code=500)

    return jsonify({
        'success': True,
        'message': '用戶已啟用' if target_user.active else '用戶已停用',
        'user': target_user.to_dict()
    })


@bp.route('/users/<int:user_id>/reset-password', methods=['POST'])
def reset_user_password(user_id):
    user = require_admin()
    if not isinstance(user, models.User):
        return user

    data = request.get_json(silent=True) or {}
    new_password = data.get('password') or ''

    try:
        target_user = accounts.update_password(user_id, new_password, user)
    except ValueError as e:
        return error_response('validation', str(e), field='password', log_context={'target_user_id': user_id})
    except Exception:
        return error_response('server', '無法重設密碼', status_code=500)

    log_success('reset_password', f"Password reset for {target_user.username} by {user.username}")
    return jsonify({'success': True, 'message': f'已重設 {target_user.username} 的密碼'})


# Annual statistics maintenance

@bp.route('/stats/reconcile', methods=['POST'])
def reconcile_stats():
    user = require_admin()
    if not isinstance(user, models.User):
        return user

    data = request.get_json(silent=True) or {}
    year = data.get('year', date.today().year)
    target_user_id = data.get('user_id')

    if not isinstance(year, int) or not 2000 <= year <= 2999:
        return error_response('validation', '年度超出範圍', field='year')

    if target_user_id is not None:
        if not isinstance(target_user_id, int) or not db.session.get(models.User, target_user_id):
            return error_response('not_found', '用戶不存在', status_code=404)
        user_ids = [target_user_id]
    else:
        user_ids = [u.id for u in models.User.query.order_by(models.User.id).all()]

    # each user is committed on its own; earlier users stay reconciled if a later one fails
    results = []
    failed_user_ids = []
    for uid in user_ids:
        try:
            results.append(ledger.reconcile_annual_stats(year, uid, user))
        except Exception as e:
            failed_user_ids.append(uid)
            logger.error(f"Failed to reconcile annual stats for user {uid}/{year}: {e}", exc_info=True)

    drifted = [r for r in results if r['revenue_drift'] or r['invoice_drift']]

    if failed_user_ids:
        return error_response(
            'server',
            '部分用戶的年度統計重新計算失敗',
            status_code=500,
            log_context={'year': year, 'failed_user_ids': failed_user_ids},
            partial=True,
            year=year,
            results=results,
            corrected=len(drifted),
            reconciled_user_ids=[r['user_id'] for r in results],
            failed_user_ids=failed_user_ids
        )

    return jsonify({
        'success': True,
        'year': year,
        'results': results,
        'corrected': len(drifted)
    })


# System settings

@bp.route('/settings')
def settings():
    user = require_admin()
    if not isinstance(user, models.User):
        return user

    return jsonify(get_system_settings())


@bp.route('/settings', methods=['POST'])
def update_settings():
    user = require_admin()
    if not isinstance(user, models.User):
        return user

    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        return error_response('validation', '請提供要更新的設定')

    try:
        updated = [update_system_setting(key, value) for key, value in data.items()]
        db.session.commit()
    except ValueError as e:
        db.session.rollback()
        return error_response('validation', str(e))
    except Exception:
        db.session.rollback()
        return error_response('server', '無法更新系統設定', status_code=500)

    logger.info(f"System settings updated by {user.username}: {', '.join(u['key'] for u in updated)}")
    return jsonify({'success': True, 'settings': get_system_settings()})
