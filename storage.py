# storage.py
"""Repository functions over the ORM models.

Each write commits on its own; a failed commit is rolled back and re-raised.
Helpers documented as staged leave the commit to the next write.
Callers get model instances back.
"""
import logging
import secrets

from sqlalchemy import and_, case, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from errors import ConflictError
from models import (
    TICKET_PRIORITIES, TICKET_STATUSES, AuthSession, KnowledgeArticle, Notification, Ticket,
    TicketAttachment, TicketComment, User, db, utcnow,
)

logger = logging.getLogger(__name__)

_PRIORITY_RANK = case({p: i for i, p in enumerate(TICKET_PRIORITIES)}, value=Ticket.priority)
_STATUS_RANK = case({s: i for i, s in enumerate(TICKET_STATUSES)}, value=Ticket.status)


def _commit():
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def _like(text):
    escaped = text.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return f'%{escaped}%'


# Users

def get_user(user_id):
    if user_id is None:
        return None
    return db.session.get(User, user_id)


def get_user_by_email(email):
    if not email:
        return None
    stmt = db.select(User).where(func.lower(User.email) == email.strip().lower())
    return db.session.execute(stmt).scalars().first()


def list_users():
    return db.session.execute(db.select(User).order_by(User.created_at, User.id)).scalars().all()


def list_users_by_roles(roles, active_only=False):
    stmt = db.select(User).where(User.role.in_(list(roles)))
    if active_only:
        stmt = stmt.where(User.is_active.is_(True))
    return db.session.execute(stmt.order_by(User.id)).scalars().all()


def _ensure_email_free(email, exclude_id=None):
    existing = get_user_by_email(email)
    if existing is not None and existing.id != exclude_id:
        raise ConflictError('User with this email already exists')


def create_user(**fields):
    fields['email'] = fields['email'].strip()
    _ensure_email_free(fields['email'])
    user = User(**fields)
    db.session.add(user)
    try:
        _commit()
    except IntegrityError:
        raise ConflictError('User with this email already exists')
    return user


def update_user(user, **fields):
    if 'email' in fields:
        fields['email'] = fields['email'].strip()
        _ensure_email_free(fields['email'], exclude_id=user.id)
    for key, value in fields.items():
        setattr(user, key, value)
    try:
        _commit()
    except IntegrityError:
        raise ConflictError('User with this email already exists')
    return user


def release_assignments(user_id):
    """Staged: unassign every ticket held by the user. Returns the row count."""
    result = db.session.execute(
        db.update(Ticket)
        .where(Ticket.assigned_to_id == user_id)
        .values(assigned_to_id=None, updated_at=utcnow())
    )
    return result.rowcount


def delete_user(user):
    db.session.delete(user)
    _commit()


# Server-side sessions

def create_session(user, lifetime):
    record = AuthSession(
        sid=secrets.token_urlsafe(32),
        user_id=user.id,
        expires_at=utcnow() + lifetime,
    )
    db.session.add(record)
    _commit()
    return record


def get_session(sid):
    if not sid:
        return None
    return db.session.get(AuthSession, sid)


def delete_session(sid):
    record = get_session(sid)
    if record is not None:
        db.session.delete(record)
        _commit()


def delete_user_sessions(user_id):
    db.session.execute(db.delete(AuthSession).where(AuthSession.user_id == user_id))
    _commit()


def purge_expired_sessions(now=None):
    now = now or utcnow()
    result = db.session.execute(db.delete(AuthSession).where(AuthSession.expires_at <= now))
    _commit()
    if result.rowcount:
        logger.info('Purged %d expired session(s)', result.rowcount)
    return result.rowcount


# Tickets

def create_ticket(created_by, **fields):
    ticket = Ticket(created_by_id=created_by.id, **fields)
    db.session.add(ticket)
    _commit()
    return ticket


def get_ticket(ticket_id):
    return db.session.get(Ticket, ticket_id)


def query_tickets(ticket_filter):
    stmt = db.select(Ticket).options(
        selectinload(Ticket.created_by), selectinload(Ticket.assigned_to)
    )
    conditions = []
    if ticket_filter.status:
        conditions.append(Ticket.status == ticket_filter.status)
    if ticket_filter.priority:
        conditions.append(Ticket.priority == ticket_filter.priority)
    if ticket_filter.category:
        conditions.append(Ticket.category == ticket_filter.category)
    if ticket_filter.assigned_to_id is not None:
        conditions.append(Ticket.assigned_to_id == ticket_filter.assigned_to_id)
    if ticket_filter.created_by_id is not None:
        conditions.append(Ticket.created_by_id == ticket_filter.created_by_id)
    if ticket_filter.search:
        pattern = _like(ticket_filter.search)
        conditions.append(or_(
            Ticket.title.ilike(pattern, escape='\\'),
            Ticket.description.ilike(pattern, escape='\\'),
        ))
    if conditions:
        stmt = stmt.where(and_(*conditions))

    if ticket_filter.sort_by == 'priority':
        column = _PRIORITY_RANK
    elif ticket_filter.sort_by == 'status':
        column = _STATUS_RANK
    else:
        column = getattr(Ticket, ticket_filter.sort_by)
    ordering = column.asc() if ticket_filter.sort_order == 'asc' else column.desc()
    stmt = stmt.order_by(ordering, Ticket.created_at.desc(), Ticket.id.desc())

    if ticket_filter.limit is not None:
        stmt = stmt.limit(ticket_filter.limit)
    if ticket_filter.offset:
        stmt = stmt.offset(ticket_filter.offset)
    return db.session.execute(stmt).scalars().all()


def save_ticket(ticket):
    """Persist changes already applied to ``ticket`` (fields or policy transitions)."""
    ticket.updated_at = utcnow()
    _commit()
    return ticket


def delete_ticket(ticket):
    db.session.delete(ticket)
    _commit()


# Comments

def add_comment(ticket, author, content, is_internal=False):
    comment = TicketComment(ticket_id=ticket.id, user_id=author.id, content=content, is_internal=is_internal)
    db.session.add(comment)
    _commit()
    return comment


def list_comments(ticket_id):
    stmt = (
        db.select(TicketComment)
        .options(selectinload(TicketComment.author))
        .where(TicketComment.ticket_id == ticket_id)
        .order_by(TicketComment.created_at, TicketComment.id)
    )
    return db.session.execute(stmt).scalars().all()


# Attachments

def add_attachment(ticket, uploaded_by, file_name, file_path, file_size, mime_type):
    attachment = TicketAttachment(
        ticket_id=ticket.id,
        uploaded_by_id=uploaded_by.id,
        file_name=file_name,
        file_path=file_path,
        file_size=file_size,
        mime_type=mime_type,
    )
    db.session.add(attachment)
    _commit()
    return attachment


def get_attachment(attachment_id):
    return db.session.get(TicketAttachment, attachment_id)


def list_attachments(ticket_id):
    stmt = (
        db.select(TicketAttachment)
        .options(selectinload(TicketAttachment.uploaded_by))
        .where(TicketAttachment.ticket_id == ticket_id)
        .order_by(TicketAttachment.created_at, TicketAttachment.id)
    )
    return db.session.execute(stmt).scalars().all()


def attachments_owned_by(user):
    """Attachments that disappear with ``user``: uploaded by them or on tickets they created."""
    stmt = db.select(TicketAttachment).join(Ticket, TicketAttachment.ticket_id == Ticket.id).where(
        or_(TicketAttachment.uploaded_by_id == user.id, Ticket.created_by_id == user.id)
    )
    return db.session.execute(stmt).scalars().all()


def delete_attachment(attachment):
    db.session.delete(attachment)
    _commit()


# Knowledge base

def create_article(created_by, **fields):
    article = KnowledgeArticle(created_by_id=created_by.id, **fields)
    db.session.add(article)
    _commit()
    return article


def get_article(article_id):
    return db.session.get(KnowledgeArticle, article_id)


def list_articles(category=None, search=None, limit=None, offset=None):
    stmt = db.select(KnowledgeArticle)
    if category:
        stmt = stmt.where(KnowledgeArticle.category == category)
    if search:
        pattern = _like(search)
        stmt = stmt.where(or_(
            KnowledgeArticle.title.ilike(pattern, escape='\\'),
            KnowledgeArticle.content.ilike(pattern, escape='\\'),
        ))
    stmt = stmt.order_by(KnowledgeArticle.created_at.desc(), KnowledgeArticle.id.desc())
    if limit is not None:
        stmt = stmt.limit(limit)
    if offset:
        stmt = stmt.offset(offset)
    return db.session.execute(stmt).scalars().all()


def update_article(article, **fields):
    for key, value in fields.items():
        setattr(article, key, value)
    _commit()
    return article


def record_article_view(article):
    # Incremented in SQL so concurrent readers do not lose counts.
    db.session.execute(
        db.update(KnowledgeArticle)
        .where(KnowledgeArticle.id == article.id)
        .values(views=KnowledgeArticle.views + 1)
    )
    _commit()
    db.session.refresh(article)
    return article


def delete_article(article):
    db.session.delete(article)
    _commit()


# Notifications

def create_notification(user_id, type, title, message, data=None):
    notification = Notification(user_id=user_id, type=type, title=title, message=message, data=data or {})
    db.session.add(notification)
    _commit()
    return notification


def get_notification(notification_id):
    return db.session.get(Notification, notification_id)


def list_notifications(user_id, only_unread=False, limit=20):
    stmt = db.select(Notification).where(Notification.user_id == user_id)
    if only_unread:
        stmt = stmt.where(Notification.is_read.is_(False))
    stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
    return db.session.execute(stmt).scalars().all()


def mark_notification_read(notification):
    notification.is_read = True
    _commit()
    return notification


def clear_notifications(user_id):
    result = db.session.execute(db.delete(Notification).where(Notification.user_id == user_id))
    _commit()
    return result.rowcount
