from flask import Blueprint, request, jsonify, send_file
from flask_wtf.csrf import generate_csrf
from datetime import date
import logging

import models
import ledger
import drafts
from exports import render_export_csv, render_export_workbook, export_filename
from invoice_numbers import current_period, next_period, can_open_next_period, parse_period, NEXT_PERIOD_OPEN_DAY
from permissions import Action, require_login, require_permission
from utils import error_response, validate_json_structure, validate_numeric_range, get_system_settings

# Configure logging
logger = logging.getLogger(__name__)

bp = Blueprint('api', __name__, url_prefix='/api')

INVOICE_FIELDS = ['year_month', 'buyer_name', 'buyer_tax_id', 'notes',
                  'pre_tax_total', 'tax_total', 'grand_total', 'session_id']


def _int_arg(name, min_val=0, max_val=None):
    value = request.args.get(name)
    if value in (None, ''):
        return None
    result = validate_numeric_range(value, min_val=min_val, max_val=max_val, field_name=name)
    if not result['valid'] or result['value'] != int(result['value']):
        raise ValueError(result['message'] if not result['valid'] else f'{name}必須為整數')
    return int(result['value'])


@bp.route('/csrf')
def get_csrf_token():
    """CSRF token for API clients (sent back in the X-CSRFToken header)"""
    return jsonify({'csrf_token': generate_csrf()})


@bp.route('/periods')
def periods():
    user = require_login()
    if not isinstance(user, models.User):
        return user

    today = date.today()
    return jsonify({
        'today': today.isoformat(),
        'current_period': current_period(today),
        'next_period': next_period(today),
        'next_period_open': can_open_next_period(today),
        'next_period_open_day': NEXT_PERIOD_OPEN_DAY,
    })


@bp.route('/invoices', methods=['POST'])
def create_invoice():
    user = require_permission(Action.CREATE)
    if not isinstance(user, models.User):
        return user

    data = request.get_json(silent=True)
    structure = validate_json_structure(data, ['invoice_data'], ['items', 'as_draft'])
    if not structure['valid']:
        return error_response('validation', structure['message'])

    invoice_data = data['invoice_data']
    items = data.get('items') or []
    as_draft = bool(data.get('as_draft', False))

    if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
        return error_response('validation', '品項格式錯誤', field='items')

    # totals may come from the line items or the session workspace instead
    required = ['year_month', 'buyer_name']
    if not items and not as_draft and not (isinstance(invoice_data, dict) and invoice_data.get('session_id')):
        required.append('grand_total')
    structure = validate_json_structure(invoice_data, required, [f for f in INVOICE_FIELDS if f not in required])
    if not structure['valid']:
        return error_response('validation', structure['message'])

    try:
        invoice = ledger.create_invoice(invoice_data, items, user, as_draft=as_draft)
    except ValueError as e:
        return error_response('business', str(e), log_context={'year_month': invoice_data.get('year_month')})
    except Exception:
        return error_response('server', '無法創建發票', status_code=500)

    return jsonify(invoice.to_dict(include_items=True)), 201


@bp.route('/invoices', methods=['GET'])
def list_invoices():
    user = require_permission(Action.READ)
    if not isinstance(user, models.User):
        return user

    try:
        invoices = ledger.list_user_invoices(
            user.id,
            year_month=request.args.get('year_month') or None,
            status=request.args.get('status') or None,
            limit=_int_arg('limit', min_val=1, max_val=500),
            offset=_int_arg('offset', min_val=0),
        )
    except ValueError as e:
        return error_response('validation', str(e))

    return jsonify([invoice.to_dict() for invoice in invoices])


def _visible_invoice(user, invoice_id):
    invoice = ledger.get_invoice(invoice_id)
    if not invoice:
        return None
    # operators only see their own invoices
    if user.role != models.UserRole.ADMIN and invoice.user_id != user.id:
        return None
    return invoice


@bp.route('/invoices/<int:invoice_id>', methods=['GET'])
def get_invoice(invoice_id):
    user = require_permission(Action.READ)
    if not isinstance(user, models.User):
        return user

    invoice = _visible_invoice(user, invoice_id)
    if not invoice:
        return error_response('not_found', '發票不存在', status_code=404, log_context={'invoice_id': invoice_id})

    return jsonify(invoice.to_dict(include_items=True))


@bp.route('/invoices/<int:invoice_id>', methods=['PATCH'])
def update_invoice(invoice_id):
    user = require_permission(Action.UPDATE)
    if not isinstance(user, models.User):
        return user

    if not _visible_invoice(user, invoice_id):
        return error_response('not_found', '發票不存在', status_code=404, log_context={'invoice_id': invoice_id})

    data = request.get_json(silent=True)
    structure = validate_json_structure(data, [], list(ledger.EDITABLE_FIELDS))
    if not structure['valid']:
        return error_response('validation', structure['message'])

    try:
        invoice = ledger.update_invoice(invoice_id, data, user)
    except ValueError as e:
        return error_response('business', str(e), log_context={'invoice_id': invoice_id})
    except Exception:
        return error_response('server', '無法更新發票', status_code=500)

    return jsonify(invoice.to_dict(include_items=True))


@bp.route('/invoices/<int:invoice_id>/issue', methods=['POST'])
def issue_invoice(invoice_id):
    user = require_permission(Action.CREATE)
    if not isinstance(user, models.User):
        return user

    if not _visible_invoice(user, invoice_id):
        return error_response('not_found', '發票不存在', status_code=404, log_context={'invoice_id': invoice_id})

    try:
        invoice = ledger.issue_invoice(invoice_id, user)
    except ValueError as e:
        return error_response('business', str(e), log_context={'invoice_id': invoice_id})
    except Exception:
        return error_response('server', '無法開立發票', status_code=500)

    return jsonify(invoice.to_dict(include_items=True))


@bp.route('/invoices/<int:invoice_id>/void', methods=['POST'])
def void_invoice(invoice_id):
    user = require_permission(Action.VOID)
    if not isinstance(user, models.User):
        return user

    if not _visible_invoice(user, invoice_id):
        return error_response('not_found', '發票不存在', status_code=404, log_context={'invoice_id': invoice_id})

    data = request.get_json(silent=True) or {}
    reason = data.get('reason')
    if not reason:
        return error_response('validation', '請輸入作廢原因', field='reason')

    try:
        invoice = ledger.void_invoice(invoice_id, reason, user)
    except ValueError as e:
        return error_response('business', str(e), log_context={'invoice_id': invoice_id})
    except Exception:
        return error_response('server', '無法作廢發票', status_code=500)

    return jsonify({
        'success': True,
        'message': '發票已作廢',
        'invoice': invoice.to_dict()
    })


@bp.route('/invoices/batch-upload', methods=['POST'])
def batch_upload():
    user = require_permission(Action.UPLOAD)
    if not isinstance(user, models.User):
        return user

    data = request.get_json(silent=True) or {}
    year_month = data.get('year_month')
    if not year_month:
        return error_response('validation', '請提供期別', field='year_month')

    try:
        result = ledger.batch_upload_invoices(year_month, user)
    except ValueError as e:
        return error_response('validation', str(e), field='year_month')
    except Exception:
        return error_response('server', '批次上傳失敗', status_code=500)

    return jsonify(result)


@bp.route('/stats/annual/<int:year>')
def annual_stats(year):
    user = require_permission(Action.READ)
    if not isinstance(user, models.User):
        return user

    if not 2000 <= year <= 2999:
        return error_response('validation', '年度超出範圍', field='year')

    # admins may ask for the company-wide figure
    user_id = user.id
    if request.args.get('scope') == 'all':
        if user.role != models.UserRole.ADMIN:
            return jsonify({'error': '權限不足'}), 403
        user_id = None

    return jsonify(ledger.annual_stats(year, user_id))


@bp.route('/export/accounting/<year_month>')
def export_accounting(year_month):
    user = require_permission(Action.EXPORT)
    if not isinstance(user, models.User):
        return user

    export_format = request.args.get('format', 'json')
    if export_format not in ('json', 'csv', 'excel'):
        return error_response('validation', '不支援的匯出格式', field='format')

    try:
        parse_period(year_month)
        rows = ledger.export_accounting_data(year_month)
    except ValueError as e:
        return error_response('validation', str(e), field='year_month')

    logger.info(f"Accounting export {year_month} ({export_format}) by {user.username}: {len(rows)} rows")

    if export_format == 'csv':
        return jsonify({
            'success': True,
            'filename': export_filename(year_month, 'csv'),
            'records': len(rows),
            'csv_data': render_export_csv(rows),
        })

    if export_format == 'excel':
        workbook = render_export_workbook(rows, year_month, get_system_settings())
        return send_file(
            workbook,
            as_attachment=True,
            download_name=export_filename(year_month, 'xlsx'),
            mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
        )

    return jsonify({'data': rows, 'records': len(rows)})


# Draft workspace: line items and notes

@bp.route('/invoice-items/<session_id>', methods=['GET'])
def get_invoice_items(session_id):
    user = require_permission(Action.READ)
    if not isinstance(user, models.User):
        return user

    try:
        items = drafts.get_items_by_session(session_id, user)
    except ValueError as e:
        return error_response('validation', str(e))

    return jsonify([item.to_dict() for item in items])


@bp.route('/invoice-items', methods=['POST'])
def create_invoice_item():
    user = require_permission(Action.CREATE)
    if not isinstance(user, models.User):
        return user

    data = request.get_json(silent=True)
    structure = validate_json_structure(data, ['session_id', 'description', 'pre_tax_amount'],
                                        ['category', 'tax_amount', 'total_amount'])
    if not structure['valid']:
        return error_response('validation', structure['message'])

    try:
        item = drafts.create_item(data, user)
    except ValueError as e:
        return error_response('validation', str(e))
    except Exception:
        return error_response('server', '無法創建發票項目', status_code=500)

    return jsonify(item.to_dict()), 201


@bp.route('/invoice-items/<int:item_id>', methods=['PATCH'])
def update_invoice_item(item_id):
    user = require_permission(Action.UPDATE)
    if not isinstance(user, models.User):
        return user

    data = request.get_json(silent=True)
    structure = validate_json_structure(data, [], list(drafts.ITEM_FIELDS))
    if not structure['valid']:
        return error_response('validation', structure['message'])

    try:
        item = drafts.update_item(item_id, data, user)
    except ValueError as e:
        return error_response('business', str(e), log_context={'item_id': item_id})
    except Exception:
        return error_response('server', '無法更新發票項目', status_code=500)

    return jsonify(item.to_dict())


@bp.route('/invoice-items/<int:item_id>', methods=['DELETE'])
def delete_invoice_item(item_id):
    user = require_permission(Action.UPDATE)
    if not isinstance(user, models.User):
        return user

    try:
        drafts.delete_item(item_id, user)
    except ValueError as e:
        return error_response('business', str(e), log_context={'item_id': item_id})
    except Exception:
        return error_response('server', '無法刪除發票項目', status_code=500)

    return jsonify({'success': True, 'message': '項目已刪除'})


@bp.route('/invoice-notes/<session_id>', methods=['GET'])
def get_invoice_notes(session_id):
    user = require_permission(Action.READ)
    if not isinstance(user, models.User):
        return user

    try:
        note = drafts.get_notes_by_session(session_id, user)
    except ValueError as e:
        return error_response('validation', str(e))

    if not note:
        return jsonify({'session_id': session_id, 'notes': ''})
    return jsonify({'session_id': note.session_id, 'notes': note.notes})


@bp.route('/invoice-notes', methods=['POST'])
def save_invoice_notes():
    user = require_permission(Action.CREATE)
    if not isinstance(user, models.User):
        return user

    data = request.get_json(silent=True)
    structure = validate_json_structure(data, ['session_id'], ['notes'])
    if not structure['valid']:
        return error_response('validation', structure['message'])

    try:
        note = drafts.save_notes(data['session_id'], data.get('notes') or '', user)
    except ValueError as e:
        return error_response('validation', str(e))
    except Exception:
        return error_response('server', '無法保存發票備註', status_code=500)

    return jsonify({'session_id': note.session_id, 'notes': note.notes})
