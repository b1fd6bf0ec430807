"""
Draft workspace: line items and notes keyed by a client session id

Workspaces are private to the user who owns them. Items collected here are adopted
by an invoice its owner creates with the same session_id.
"""
import logging
from datetime import datetime

from models import db, InvoiceItem, InvoiceNote
from utils import parse_amount, sanitize_input

logger = logging.getLogger(__name__)

ITEM_FIELDS = ('description', 'category', 'pre_tax_amount', 'tax_amount', 'total_amount')


def _session_key(session_id):
    session_id = sanitize_input(session_id, max_length=64)
    if not session_id:
        raise ValueError('缺少 session_id')
    return session_id


def _apply_item_fields(item, data):
    if 'description' in data:
        description = sanitize_input(data['description'], max_length=500)
        if not description:
            raise ValueError('品項說明不可為空白')
        item.description = description
    if 'category' in data:
        item.category = sanitize_input(data['category'], max_length=50) or '其他'
    if 'pre_tax_amount' in data:
        item.pre_tax_amount = parse_amount(data['pre_tax_amount'], '未稅金額')
    if 'tax_amount' in data:
        item.tax_amount = parse_amount(data['tax_amount'], '稅額')

    if 'total_amount' in data:
        item.total_amount = parse_amount(data['total_amount'], '品項金額')
    elif item.pre_tax_amount is not None and item.tax_amount is not None:
        item.total_amount = item.pre_tax_amount + item.tax_amount


def _owned_item(item_id, user):
    item = db.session.get(InvoiceItem, item_id)
    # another user's item is reported as missing
    if not item or item.user_id != user.id:
        raise ValueError('品項不存在')
    return item


def get_items_by_session(session_id, user):
    return InvoiceItem.query.filter_by(
        session_id=_session_key(session_id),
        user_id=user.id
    ).order_by(InvoiceItem.id).all()


def create_item(data, user):
    item = InvoiceItem(session_id=_session_key(data.get('session_id')), user_id=user.id,
                       category='其他', tax_amount=0)
    try:
        if 'description' not in data or 'pre_tax_amount' not in data:
            raise ValueError('品項說明與未稅金額為必填')
        _apply_item_fields(item, data)
        db.session.add(item)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return item


def update_item(item_id, data, user):
    try:
        item = _owned_item(item_id, user)
        if item.invoice_id is not None:
            raise ValueError('已開立發票的品項不可修改')

        _apply_item_fields(item, {k: v for k, v in data.items() if k in ITEM_FIELDS})
        item.updated_at = datetime.utcnow()
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return item


def delete_item(item_id, user):
    try:
        item = _owned_item(item_id, user)
        if item.invoice_id is not None:
            raise ValueError('已開立發票的品項不可刪除')

        db.session.delete(item)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def clear_session_items(session_id, user):
    """Drop every pending item of a workspace; adopted items are kept"""
    count = InvoiceItem.query.filter_by(
        session_id=_session_key(session_id),
        user_id=user.id,
        invoice_id=None
    ).delete()
    db.session.commit()
    logger.debug(f"Cleared {count} pending items for session {session_id}")
    return count


def get_notes_by_session(session_id, user):
    return InvoiceNote.query.filter_by(session_id=_session_key(session_id), user_id=user.id).first()


def save_notes(session_id, notes, user):
    """Create or update the notes of a workspace"""
    session_id = _session_key(session_id)
    try:
        note = InvoiceNote.query.filter_by(session_id=session_id, user_id=user.id).first()
        if note:
            note.notes = sanitize_input(notes, max_length=2000)
            note.updated_at = datetime.utcnow()
        else:
            note = InvoiceNote(session_id=session_id, user_id=user.id,
                               notes=sanitize_input(notes, max_length=2000))
            db.session.add(note)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return note
