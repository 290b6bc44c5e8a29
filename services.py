# services.py
"""Operations behind the API routes.

Each function takes the acting user first, checks it against ``policy``,
does the work through ``storage`` and hands side effects to the notifier.
Arguments are already validated/cleaned by the route layer.
"""
import logging

import analytics
import attachments
import storage
from auth import generate_password, hash_password, verify_password
from errors import AuthorizationError, InvalidAssigneeError, NotFoundError, ValidationError
from models import utcnow
from notifications import notifier
from policy import (
    Capability, apply_assignment, apply_status_change, as_role, can_assign, can_delete_attachment,
    can_delete_ticket, can_post_internal_comment, can_view_ticket, has_capability, require,
    visible_comments,
)
from ticket_filters import build_ticket_filter

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
NOTIFICATION_LIMIT = 50


# --- Tickets ---

def _ticket_or_404(ticket_id):
    ticket = storage.get_ticket(ticket_id)
    if ticket is None:
        raise NotFoundError('Ticket not found')
    return ticket


def visible_ticket(user, ticket_id):
    ticket = _ticket_or_404(ticket_id)
    if not can_view_ticket(user, ticket):
        raise AuthorizationError('You do not have permission to view this ticket')
    return ticket


def list_tickets(user, params):
    return storage.query_tickets(build_ticket_filter(user, params))


def ticket_detail(user, ticket_id):
    ticket = visible_ticket(user, ticket_id)
    comments = visible_comments(user, storage.list_comments(ticket.id))
    return ticket, comments, storage.list_attachments(ticket.id)


def create_ticket(user, fields, files=()):
    """Create a ticket for ``user``; uploads are checked before anything is written."""
    files = attachments.validate_uploads(files)
    ticket = storage.create_ticket(user, **fields)
    for f in files:
        _store_attachment(user, ticket, f)
    logger.info('Ticket %s created by user %s', ticket.id, user.id)
    notifier.ticket_created(ticket, user)
    return ticket


def _resolve_assignee(assignee_id):
    if assignee_id is None:
        return None
    assignee = storage.get_user(assignee_id)
    if assignee is None:
        raise InvalidAssigneeError()
    return assignee


UNSET = object()


def update_ticket(user, ticket_id, fields, status=None, assigned_to_id=UNSET):
    require(user, Capability.UPDATE_TICKETS, 'Only IT staff can update tickets')
    ticket = _ticket_or_404(ticket_id)
    previous_status = ticket.status

    assignee = None
    if assigned_to_id is not UNSET:
        assignee = _resolve_assignee(assigned_to_id)
        previous_assignee = ticket.assigned_to_id
        apply_assignment(ticket, assignee)
        if assignee is None or assignee.id == previous_assignee:
            assignee = None

    for key, value in fields.items():
        setattr(ticket, key, value)
    if status is not None:
        apply_status_change(ticket, status, utcnow())

    storage.save_ticket(ticket)
    logger.info('Ticket %s updated by user %s', ticket.id, user.id)
    if assignee is not None:
        notifier.ticket_assigned(ticket, assignee)
    notifier.ticket_updated(ticket, user, status_changed=ticket.status != previous_status)
    return ticket


def assign_ticket(user, ticket_id, assigned_to_id):
    if not can_assign(user):
        raise AuthorizationError('Only IT staff can assign tickets')
    ticket = _ticket_or_404(ticket_id)
    assignee = _resolve_assignee(assigned_to_id)
    apply_assignment(ticket, assignee)
    storage.save_ticket(ticket)
    logger.info('Ticket %s assigned to %s by user %s', ticket.id, assigned_to_id, user.id)
    if assignee is not None:
        notifier.ticket_assigned(ticket, assignee)
    else:
        notifier.ticket_updated(ticket, user)
    return ticket


def delete_ticket(user, ticket_id):
    ticket = visible_ticket(user, ticket_id)
    if not can_delete_ticket(user, ticket):
        raise AuthorizationError('Only new tickets can be deleted by their creator')
    created_by_id = ticket.created_by_id
    for attachment in storage.list_attachments(ticket.id):
        attachments.remove_file(attachment.file_path)
    storage.delete_ticket(ticket)
    logger.info('Ticket %s deleted by user %s', ticket_id, user.id)
    notifier.ticket_deleted(ticket_id, created_by_id)


# --- Comments ---

def list_comments(user, ticket_id):
    ticket = visible_ticket(user, ticket_id)
    return visible_comments(user, storage.list_comments(ticket.id))


def add_comment(user, ticket_id, content, is_internal=False):
    ticket = visible_ticket(user, ticket_id)
    if is_internal and not can_post_internal_comment(user):
        raise AuthorizationError('Cannot create internal notes')
    comment = storage.add_comment(ticket, user, content, is_internal=is_internal)
    notifier.comment_added(ticket, comment, user)
    return comment


# --- Attachments ---

def _store_attachment(user, ticket, f):
    file_name, stored_name, size, mime_type = attachments.save_upload(ticket.id, f)
    try:
        return storage.add_attachment(ticket, user, file_name, stored_name, size, mime_type)
    except Exception:
        attachments.remove_file(stored_name)
        raise


def list_attachments(user, ticket_id):
    ticket = visible_ticket(user, ticket_id)
    return storage.list_attachments(ticket.id)


def upload_attachments(user, ticket_id, files):
    ticket = visible_ticket(user, ticket_id)
    files = attachments.validate_uploads(files)
    if not files:
        raise ValidationError('No files uploaded')
    saved = [_store_attachment(user, ticket, f) for f in files]
    logger.info('%d attachment(s) added to ticket %s by user %s', len(saved), ticket.id, user.id)
    return saved


def _attachment_or_404(ticket, attachment_id):
    attachment = storage.get_attachment(attachment_id)
    if attachment is None or attachment.ticket_id != ticket.id:
        raise NotFoundError('Attachment not found')
    return attachment


def attachment_for_download(user, ticket_id, attachment_id):
    ticket = visible_ticket(user, ticket_id)
    return _attachment_or_404(ticket, attachment_id)


def delete_attachment(user, ticket_id, attachment_id):
    ticket = visible_ticket(user, ticket_id)
    attachment = _attachment_or_404(ticket, attachment_id)
    if not can_delete_attachment(user, ticket, attachment):
        raise AuthorizationError('You cannot delete this attachment')
    # File first, then the row; a missing file does not block removal.
    attachments.remove_file(attachment.file_path)
    storage.delete_attachment(attachment)


# --- Users ---

def _user_or_404(user_id):
    user = storage.get_user(user_id)
    if user is None:
        raise NotFoundError('User not found')
    return user


def _require_self(viewer, user_id, message='You can only manage your own account'):
    if viewer.id != user_id:
        raise AuthorizationError(message)


def list_users(admin):
    require(admin, Capability.MANAGE_USERS)
    return storage.list_users()


def it_staff(viewer):
    require(viewer, Capability.VIEW_ALL_TICKETS)
    return analytics.team_status()


def get_user(viewer, user_id):
    if viewer.id != user_id:
        require(viewer, Capability.MANAGE_USERS)
    return _user_or_404(user_id)


def create_user(admin, first_name, last_name, email, role='end_user', is_active=True):
    """Create an account with a generated password; returns (user, EmailResult)."""
    require(admin, Capability.MANAGE_USERS)
    temp_password = generate_password()
    user = storage.create_user(
        email=email,
        first_name=first_name,
        last_name=last_name,
        role=as_role(role).value,
        is_active=is_active,
        password=hash_password(temp_password),
    )
    logger.info('User %s created by admin %s', user.id, admin.id)
    return user, notifier.user_created(user, temp_password)


def update_user(admin, user_id, fields):
    require(admin, Capability.MANAGE_USERS)
    user = _user_or_404(user_id)
    if 'role' in fields:
        fields['role'] = as_role(fields['role']).value
    if user.id == admin.id:
        if fields.get('is_active') is False:
            raise ValidationError('You cannot deactivate your own account')
        if fields.get('role', user.role) != user.role:
            raise ValidationError('You cannot change your own role')
    if 'role' in fields and not has_capability(fields['role'], Capability.RECEIVE_ASSIGNMENTS):
        released = storage.release_assignments(user.id)
        if released:
            logger.info('Unassigned %s ticket(s) from user %s after role change', released, user.id)
    storage.update_user(user, **fields)
    if not user.is_active:
        storage.delete_user_sessions(user.id)
    return user


def toggle_user_status(admin, user_id):
    require(admin, Capability.MANAGE_USERS)
    user = _user_or_404(user_id)
    if user.id == admin.id:
        raise ValidationError('You cannot deactivate your own account')
    storage.update_user(user, is_active=not user.is_active)
    if not user.is_active:
        storage.delete_user_sessions(user.id)
    logger.info('User %s %s by admin %s', user.id, 'activated' if user.is_active else 'deactivated', admin.id)
    return user


def delete_user(admin, user_id):
    require(admin, Capability.MANAGE_USERS)
    user = _user_or_404(user_id)
    if user.id == admin.id:
        raise ValidationError('You cannot delete your own account')
    for attachment in storage.attachments_owned_by(user):
        attachments.remove_file(attachment.file_path)
    storage.delete_user(user)
    logger.info('User %s deleted by admin %s', user_id, admin.id)


def _reset_password(user):
    temp_password = generate_password()
    storage.update_user(user, password=hash_password(temp_password))
    storage.delete_user_sessions(user.id)
    return notifier.password_reset(user, temp_password)


def reset_password(admin, user_id):
    require(admin, Capability.MANAGE_USERS)
    user = _user_or_404(user_id)
    logger.info('Password of user %s reset by admin %s', user.id, admin.id)
    return _reset_password(user)


def request_password_reset(email):
    """Self-service reset; the caller answers the same way whether or not the account exists."""
    user = storage.get_user_by_email(email)
    if user is None or not user.is_active:
        logger.info('Password reset requested for unknown or inactive account %s', email)
        return
    _reset_password(user)


def get_settings(viewer, user_id):
    _require_self(viewer, user_id)
    return viewer


def update_settings(viewer, user_id, fields):
    _require_self(viewer, user_id)
    return storage.update_user(viewer, **fields)


def change_password(viewer, user_id, current_password, new_password):
    _require_self(viewer, user_id)
    if not verify_password(viewer.password, current_password):
        raise ValidationError('Current password is incorrect')
    if not new_password or len(new_password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f'New password must be at least {MIN_PASSWORD_LENGTH} characters')
    storage.update_user(viewer, password=hash_password(new_password))


# --- Knowledge base ---

def _article_or_404(article_id):
    article = storage.get_article(article_id)
    if article is None:
        raise NotFoundError('Article not found')
    return article


def list_articles(category=None, search=None, limit=None, offset=None):
    return storage.list_articles(category=category, search=search, limit=limit, offset=offset)


def read_article(article_id):
    return storage.record_article_view(_article_or_404(article_id))


def create_article(user, fields):
    require(user, Capability.MANAGE_KNOWLEDGE_BASE, 'Only managers and admins can manage articles')
    return storage.create_article(user, **fields)


def update_article(user, article_id, fields):
    require(user, Capability.MANAGE_KNOWLEDGE_BASE, 'Only managers and admins can manage articles')
    return storage.update_article(_article_or_404(article_id), **fields)


def delete_article(user, article_id):
    require(user, Capability.MANAGE_KNOWLEDGE_BASE, 'Only managers and admins can manage articles')
    storage.delete_article(_article_or_404(article_id))


# --- Notifications ---

def list_notifications(user, only_unread=False):
    return storage.list_notifications(user.id, only_unread=only_unread, limit=NOTIFICATION_LIMIT)


def mark_notification_read(user, notification_id):
    notification = storage.get_notification(notification_id)
    if notification is None or notification.user_id != user.id:
        raise NotFoundError('Notification not found')
    return storage.mark_notification_read(notification)


def clear_notifications(user):
    return storage.clear_notifications(user.id)
