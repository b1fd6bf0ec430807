"""
Utility functions for the invoice service
Includes error/success logging, request validation, audit trail and system settings
"""
import re
import uuid
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any
from datetime import datetime
from flask import jsonify, session, request, has_request_context

# Configure logging
logger = logging.getLogger(__name__)


def generate_error_id() -> str:
    """
    Generate a short unique id for tracing an error in the logs

    Returns:
        str: first 8 characters of a UUID4, upper-cased
    """
    return str(uuid.uuid4())[:8].upper()


def get_user_context() -> Dict[str, Any]:
    """
    Current user information for log records

    Returns:
        Dict with user_id, username and role
    """
    if has_request_context():
        from models import db, User
        user_id = session.get('user_id')
        if user_id:
            user = db.session.get(User, user_id)
            if user:
                return {
                    'user_id': user.id,
                    'username': user.username,
                    'role': user.role.value if hasattr(user.role, 'value') else str(user.role)
                }

    return {'user_id': None, 'username': 'anonymous', 'role': 'unknown'}


def log_error(error_type: str, message: str, error_id: str = None,
              context: Dict[str, Any] = None, exc_info: bool = False):
    """
    Centralised error logging with user context

    Args:
        error_type: 'validation', 'permission', 'not_found', 'server' or 'business'
        message: Description of the error
        error_id: Unique error id (generated when omitted)
        context: Extra context (invoice_id, year_month, ...)
        exc_info: Whether to attach exception information
    """
    if error_id is None:
        error_id = generate_error_id()

    user_ctx = get_user_context()

    log_data = {
        'error_id': error_id,
        'error_type': error_type,
        'msg_detail': message,
        'user_id': user_ctx.get('user_id'),
        'username': user_ctx.get('username'),
        'role': user_ctx.get('role'),
    }

    if context:
        log_data.update(context)

    if error_type in ['validation', 'business', 'permission', 'not_found']:
        logger.warning(f"[{error_id}] {message}", extra=log_data, exc_info=exc_info)
    else:  # server errors
        logger.error(f"[{error_id}] {message}", extra=log_data, exc_info=exc_info)


def log_success(operation: str, message: str, context: Dict[str, Any] = None):
    """
    Log a successful critical operation

    Args:
        operation: Operation name (e.g. 'invoice_created', 'invoice_voided')
        message: Description
        context: Extra context (invoice_id, amount, ...)
    """
    user_ctx = get_user_context()

    log_data = {
        'operation': operation,
        'msg_detail': message,
        'user_id': user_ctx.get('user_id'),
        'username': user_ctx.get('username'),
        'role': user_ctx.get('role'),
        'timestamp': datetime.utcnow().isoformat()
    }

    if context:
        log_data.update(context)

    logger.info(f"[SUCCESS] {operation}: {message}", extra=log_data)


def error_response(error_type: str, message: str, details: Optional[str] = None,
                   field: Optional[str] = None, status_code: int = 400,
                   log_context: Dict[str, Any] = None, **kwargs):
    """
    Standard JSON error response for API endpoints, logged automatically

    Args:
        error_type: 'validation', 'permission', 'not_found', 'server' or 'business'
        message: Short error message shown to the user
        details: Additional details (optional)
        field: Offending field (optional)
        status_code: HTTP status (default 400)
        log_context: Extra context for the log record only
        **kwargs: Extra data merged into the response body

    Returns:
        tuple: (jsonify response, status_code)

    Examples:
        >>> return error_response(
        ...     error_type='business',
        ...     message='發票已作廢',
        ...     log_context={'invoice_id': invoice_id}
        ... )
    """
    error_id = generate_error_id()

    log_error(
        error_type=error_type,
        message=message,
        error_id=error_id,
        context=log_context or {},
        exc_info=error_type == 'server'
    )

    response_data = {
        'error': message,
        'type': error_type,
        'error_id': error_id,
        'timestamp': datetime.utcnow().isoformat()
    }

    if details:
        response_data['details'] = details

    if field:
        response_data['field'] = field

    response_data.update(kwargs)

    return jsonify(response_data), status_code


def sanitize_input(value: str, max_length: int = 255) -> str:
    """
    Strip control characters and surrounding whitespace, truncating to max_length
    """
    if value is None:
        return ''

    value = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', str(value)).strip()
    return value[:max_length]


def validate_tax_id(tax_id: str) -> Dict[str, Any]:
    """
    Validate a buyer unified business number (統一編號)

    Args:
        tax_id: The tax id string, optional for consumer invoices

    Returns:
        Dict with validation result and the cleaned value
    """
    if not tax_id:
        return {
            'valid': True,  # optional for B2C invoices
            'formatted': '',
            'message': '未提供統一編號'
        }

    clean = re.sub(r'[\s-]', '', str(tax_id))
    if not re.match(r'^\d{8}$', clean):
        return {
            'valid': False,
            'formatted': clean,
            'message': '統一編號必須為 8 位數字'
        }

    return {
        'valid': True,
        'formatted': clean,
        'message': '統一編號格式正確'
    }


def validate_numeric_range(value: Any, min_val: float = None, max_val: float = None, field_name: str = "欄位") -> Dict[str, Any]:
    """
    Validate numeric values within a range

    Args:
        value: The value to validate
        min_val: Minimum allowed value
        max_val: Maximum allowed value
        field_name: Name of the field for error messages

    Returns:
        Dict with validation result
    """
    try:
        num_value = Decimal(str(value))
        if not num_value.is_finite():
            raise InvalidOperation

        if min_val is not None and num_value < Decimal(str(min_val)):
            return {
                'valid': False,
                'value': num_value,
                'message': f'{field_name}必須大於或等於 {min_val}'
            }

        if max_val is not None and num_value > Decimal(str(max_val)):
            return {
                'valid': False,
                'value': num_value,
                'message': f'{field_name}必須小於或等於 {max_val}'
            }

        return {
            'valid': True,
            'value': num_value,
            'message': f'{field_name}有效'
        }

    except (InvalidOperation, ValueError, TypeError):
        return {
            'valid': False,
            'value': value,
            'message': f'{field_name}必須為有效數字'
        }


def parse_amount(value: Any, field_name: str = "金額") -> Decimal:
    """
    Convert a money amount to a 2-decimal Decimal

    Raises:
        ValueError: if the amount is not a number or is negative
    """
    result = validate_numeric_range(value, min_val=0, field_name=field_name)
    if not result['valid']:
        raise ValueError(result['message'])
    return result['value'].quantize(Decimal('0.01'))


def validate_json_structure(data: dict, required_fields: list, optional_fields: list = None) -> Dict[str, Any]:
    """
    Validate JSON structure for API endpoints

    Args:
        data: The JSON data to validate
        required_fields: List of required field names
        optional_fields: List of optional field names

    Returns:
        Dict with validation result
    """
    if not isinstance(data, dict):
        return {
            'valid': False,
            'message': '資料必須為有效的 JSON 物件'
        }

    missing_fields = []
    for field in required_fields:
        if field not in data or data[field] is None or data[field] == '':
            missing_fields.append(field)

    if missing_fields:
        return {
            'valid': False,
            'message': f'缺少必要欄位：{", ".join(missing_fields)}'
        }

    allowed_fields = set(required_fields)
    if optional_fields:
        allowed_fields.update(optional_fields)

    unexpected_fields = [field for field in data.keys() if field not in allowed_fields]

    if unexpected_fields:
        return {
            'valid': False,
            'message': f'不允許的欄位：{", ".join(unexpected_fields)}'
        }

    return {
        'valid': True,
        'message': 'JSON 結構有效'
    }


def record_audit(user_id: int, action: str, resource_type: str,
                 resource_id: Any = None, details: Dict[str, Any] = None):
    """
    Append an audit entry to the current session (committed by the caller)

    Request IP and user agent are captured when called inside a request.
    """
    from models import db, AuditLog

    entry = AuditLog(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=details,
    )

    if has_request_context():
        entry.ip_address = request.remote_addr or 'unknown'
        entry.user_agent = request.headers.get('User-Agent')

    db.session.add(entry)
    return entry


DEFAULT_SYSTEM_SETTINGS = {
    'company_name': {
        'value': '廣告設計有限公司',
        'description': '開立發票的公司名稱'
    },
    'company_tax_id': {
        'value': '12345678',
        'description': '公司統一編號'
    },
    'company_address': {
        'value': '',
        'description': '公司地址'
    },
    'company_phone': {
        'value': '',
        'description': '公司電話'
    },
}


def initialize_system_settings() -> Dict[str, Any]:
    """
    Insert default system settings that are not yet present

    Returns:
        Dict with initialization status
    """
    from models import SystemSetting, db

    created = []
    try:
        for key, config in DEFAULT_SYSTEM_SETTINGS.items():
            existing = SystemSetting.query.filter_by(key=key).first()
            if not existing:
                db.session.add(SystemSetting(
                    key=key,
                    value=config['value'],
                    description=config['description']
                ))
                created.append(key)

        db.session.commit()
        if created:
            logger.info(f"Initialized system settings: {', '.join(created)}")
        return {'success': True, 'created': created}

    except Exception:
        db.session.rollback()
        logger.exception("Error initializing system settings")
        raise


def get_system_settings() -> Dict[str, str]:
    """
    All system settings as a key/value dict, falling back to defaults for missing keys
    """
    from models import SystemSetting

    settings = {key: config['value'] for key, config in DEFAULT_SYSTEM_SETTINGS.items()}
    for setting in SystemSetting.query.all():
        settings[setting.key] = setting.value
    return settings


def update_system_setting(key: str, value: str) -> Dict[str, Any]:
    """
    Update (or create) a single system setting

    Raises:
        ValueError: unknown setting key
    """
    from models import SystemSetting, db

    if key not in DEFAULT_SYSTEM_SETTINGS:
        raise ValueError(f'未知的系統設定：{key}')

    if key == 'company_tax_id':
        result = validate_tax_id(value)
        if not result['valid']:
            raise ValueError(result['message'])
        value = result['formatted']

    setting = SystemSetting.query.filter_by(key=key).first()
    if not setting:
        setting = SystemSetting(key=key, description=DEFAULT_SYSTEM_SETTINGS[key]['description'])
        db.session.add(setting)

    setting.value = sanitize_input(value, max_length=500)
    return {'key': key, 'value': setting.value}
