from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


db = SQLAlchemy(model_class=Base)
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, Integer, Numeric, DateTime, Boolean, Text, ForeignKey, Enum, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship
import enum


class UserRole(enum.Enum):
    ADMIN = "admin"
    OPERATOR = "operator"


class InvoiceStatus(enum.Enum):
    DRAFT = "draft"
    ISSUED = "issued"
    VOIDED = "voided"


class User(db.Model):
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(80), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(256), nullable=False)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=UserRole.OPERATOR,
    )
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_login: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    invoices = relationship("Invoice", foreign_keys="Invoice.user_id", back_populates="user")

    def to_dict(self):
        """Public representation, never includes the password hash"""
        return {
            'id': self.id,
            'username': self.username,
            'display_name': self.display_name,
            'role': self.role.value,
            'active': self.active,
            'last_login': self.last_login.isoformat() if self.last_login else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class NumberRange(db.Model):
    """Block of invoice numbers assigned to one bimonthly period"""
    __tablename__ = 'invoice_numbers'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    year_month: Mapped[str] = mapped_column(String(8), nullable=False, index=True)  # e.g. "20250102"
    prefix: Mapped[str] = mapped_column(String(8), nullable=False)  # e.g. "250102"
    start_number: Mapped[int] = mapped_column(Integer, nullable=False)
    end_number: Mapped[int] = mapped_column(Integer, nullable=False)
    current_number: Mapped[int] = mapped_column(Integer, nullable=False)  # next number to hand out
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    downloaded_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    invoices = relationship("Invoice", back_populates="number_range")

    @property
    def remaining(self):
        return max(0, self.end_number - self.current_number + 1)

    @property
    def exhausted(self):
        return self.current_number > self.end_number


class Invoice(db.Model):
    __tablename__ = 'invoices'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=True)  # NULL while draft
    year_month: Mapped[str] = mapped_column(String(8), nullable=False, index=True)
    buyer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    buyer_tax_id: Mapped[str] = mapped_column(String(20), nullable=True)
    notes: Mapped[str] = mapped_column(Text, nullable=True)
    pre_tax_total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    tax_total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    grand_total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=InvoiceStatus.DRAFT,
    )
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)
    number_range_id: Mapped[int] = mapped_column(Integer, ForeignKey('invoice_numbers.id'), nullable=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    # Void fields
    voided_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    void_reason: Mapped[str] = mapped_column(Text, nullable=True)
    voided_by: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", foreign_keys=[user_id], back_populates="invoices")
    voided_by_user = relationship("User", foreign_keys=[voided_by])
    number_range = relationship("NumberRange", back_populates="invoices")
    items = relationship("InvoiceItem", back_populates="invoice", order_by="InvoiceItem.id")

    def to_dict(self, include_items=False):
        data = {
            'id': self.id,
            'invoice_number': self.invoice_number,
            'year_month': self.year_month,
            'buyer_name': self.buyer_name,
            'buyer_tax_id': self.buyer_tax_id,
            'notes': self.notes,
            'pre_tax_total': float(self.pre_tax_total),
            'tax_total': float(self.tax_total),
            'grand_total': float(self.grand_total),
            'status': self.status.value,
            'user_id': self.user_id,
            'issued_at': self.issued_at.isoformat() if self.issued_at else None,
            'voided_at': self.voided_at.isoformat() if self.voided_at else None,
            'void_reason': self.void_reason,
            'uploaded_at': self.uploaded_at.isoformat() if self.uploaded_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
        if include_items:
            data['items'] = [item.to_dict() for item in self.items]
        return data


class InvoiceItem(db.Model):
    """Line item; lives in a draft workspace (session_id) until adopted by an invoice"""
    __tablename__ = 'invoice_items'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)  # workspace owner
    invoice_id: Mapped[int] = mapped_column(Integer, ForeignKey('invoices.id'), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default='其他')
    pre_tax_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    invoice = relationship("Invoice", back_populates="items")

    def to_dict(self):
        return {
            'id': self.id,
            'session_id': self.session_id,
            'user_id': self.user_id,
            'invoice_id': self.invoice_id,
            'description': self.description,
            'category': self.category,
            'pre_tax_amount': float(self.pre_tax_amount),
            'tax_amount': float(self.tax_amount),
            'total_amount': float(self.total_amount),
        }


class InvoiceNote(db.Model):
    __tablename__ = 'invoice_notes'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)
    notes: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('user_id', 'session_id', name='unique_user_note_session'),
    )


class AnnualStat(db.Model):
    """Running revenue/count per user and year, adjusted on every issue and void"""
    __tablename__ = 'annual_stats'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    total_revenue: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=Decimal('0'))
    total_invoices: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User")

    __table_args__ = (
        db.UniqueConstraint('user_id', 'year', name='unique_user_year'),
    )


class AuditLog(db.Model):
    """Append-only trail of user actions"""
    __tablename__ = 'audit_logs'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # 'CREATE_INVOICE', 'VOID_INVOICE', ...
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(50), nullable=True)
    details: Mapped[dict] = mapped_column(JSON(none_as_null=True), nullable=True)
    ip_address: Mapped[str] = mapped_column(String(45), nullable=True)  # IPv4 or IPv6
    user_agent: Mapped[str] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    user = relationship("User")


class SystemSetting(db.Model):
    __tablename__ = 'system_settings'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    value: Mapped[str] = mapped_column(Text, nullable=False, default='')
    description: Mapped[str] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
