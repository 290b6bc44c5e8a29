# models.py
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

USER_ROLES = ('end_user', 'it_staff', 'manager', 'admin')
TICKET_CATEGORIES = ('hardware', 'software', 'network', 'access', 'other')
TICKET_PRIORITIES = ('low', 'medium', 'high', 'critical')
TICKET_STATUSES = ('new', 'in_progress', 'pending', 'resolved', 'closed')
ACTIVE_STATUSES = ('new', 'in_progress', 'pending')
TERMINAL_STATUSES = ('resolved', 'closed')
CONTACT_PREFERENCES = ('email', 'phone', 'both')
THEMES = ('light', 'dark', 'auto')


def utcnow():
    """Naive UTC timestamp; every DateTime column in the schema stores UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(db.Model):
    __tablename__ = 'users'
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    first_name = db.Column(db.String(100))
    last_name = db.Column(db.String(100))
    password = db.Column(db.String(255))
    role = db.Column(db.Enum(*USER_ROLES, name='user_role'), nullable=False, default='end_user')
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    phone = db.Column(db.String(30))
    timezone = db.Column(db.String(64), default='UTC')
    language = db.Column(db.String(10), default='en')
    theme = db.Column(db.String(10), default='auto')
    compact_mode = db.Column(db.Boolean, default=False)
    email_notifications = db.Column(db.Boolean, default=True)
    push_notifications = db.Column(db.Boolean, default=True)
    sms_notifications = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    created_tickets = db.relationship(
        'Ticket', foreign_keys='Ticket.created_by_id', back_populates='created_by',
        cascade='all, delete-orphan'
    )
    assigned_tickets = db.relationship(
        'Ticket', foreign_keys='Ticket.assigned_to_id', back_populates='assigned_to'
    )
    comments = db.relationship('TicketComment', back_populates='author', cascade='all, delete-orphan')
    attachments = db.relationship('TicketAttachment', back_populates='uploaded_by', cascade='all, delete-orphan')
    articles = db.relationship('KnowledgeArticle', back_populates='created_by', cascade='all, delete-orphan')
    notifications = db.relationship('Notification', back_populates='user', cascade='all, delete-orphan')
    sessions = db.relationship('AuthSession', back_populates='user', cascade='all, delete-orphan')

    @property
    def display_name(self):
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or self.email or 'Unknown'


class AuthSession(db.Model):
    __tablename__ = 'auth_sessions'
    sid = db.Column(db.String(64), primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)

    user = db.relationship('User', back_populates='sessions')


class Ticket(db.Model):
    __tablename__ = 'tickets'
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    category = db.Column(db.Enum(*TICKET_CATEGORIES, name='ticket_category'), nullable=False)
    priority = db.Column(db.Enum(*TICKET_PRIORITIES, name='ticket_priority'), nullable=False)
    status = db.Column(db.Enum(*TICKET_STATUSES, name='ticket_status'), nullable=False, default='new')
    created_by_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    assigned_to_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='SET NULL'), index=True)
    contact_phone = db.Column(db.String(20))
    contact_preference = db.Column(
        db.Enum(*CONTACT_PREFERENCES, name='contact_preference'), default='email'
    )
    best_time_to_contact = db.Column(db.String(100))
    location = db.Column(db.String(100))
    resolved_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    created_by = db.relationship('User', foreign_keys=[created_by_id], back_populates='created_tickets')
    assigned_to = db.relationship('User', foreign_keys=[assigned_to_id], back_populates='assigned_tickets')
    comments = db.relationship(
        'TicketComment', back_populates='ticket', cascade='all, delete-orphan',
        order_by='TicketComment.created_at'
    )
    attachments = db.relationship(
        'TicketAttachment', back_populates='ticket', cascade='all, delete-orphan',
        order_by='TicketAttachment.created_at'
    )


class TicketComment(db.Model):
    __tablename__ = 'ticket_comments'
    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(db.Integer, db.ForeignKey('tickets.id', ondelete='CASCADE'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    content = db.Column(db.Text, nullable=False)
    is_internal = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    ticket = db.relationship('Ticket', back_populates='comments')
    author = db.relationship('User', back_populates='comments')


class TicketAttachment(db.Model):
    __tablename__ = 'ticket_attachments'
    id = db.Column(db.Integer, primary_key=True)
    ticket_id = db.Column(db.Integer, db.ForeignKey('tickets.id', ondelete='CASCADE'), nullable=False, index=True)
    file_name = db.Column(db.String(255), nullable=False)
    file_path = db.Column(db.String(500), nullable=False)
    file_size = db.Column(db.Integer, nullable=False)
    mime_type = db.Column(db.String(100), nullable=False)
    uploaded_by_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    ticket = db.relationship('Ticket', back_populates='attachments')
    uploaded_by = db.relationship('User', back_populates='attachments')


class KnowledgeArticle(db.Model):
    __tablename__ = 'knowledge_articles'
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    content = db.Column(db.Text, nullable=False)
    category = db.Column(db.Enum(*TICKET_CATEGORIES, name='ticket_category'), nullable=False)
    tags = db.Column(db.JSON, default=list)
    created_by_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    views = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    created_by = db.relationship('User', back_populates='articles')


class Notification(db.Model):
    __tablename__ = 'notifications'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    type = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    data = db.Column(db.JSON)
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    user = db.relationship('User', back_populates='notifications')
