# notifications.py
"""Side channels for ticket and account events.

The service layer talks to the module-level ``notifier`` only. It fans an
event out to three channels: e-mail (``Mailer``), in-app ``Notification``
rows, and Server-Sent Events pushed through the ``EventHub``. Every channel
is best-effort; a failure is logged and the caller carries on.
"""
import json
import logging
import queue
import smtplib
import threading
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import Optional

from flask import has_request_context, request

import storage
from policy import can_view_internal_comments

logger = logging.getLogger(__name__)

SSE_RETRY_MS = 5000
POLL_INTERVAL_SECONDS = 30
HEARTBEAT_SECONDS = 20


# --- In-memory event hub for Server-Sent Events (SSE) ---
class EventHub:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers = {}  # queue.Queue -> (user_id, is_staff)

    def subscribe(self, user_id, staff=False):
        q = queue.Queue()
        with self._lock:
            self._subscribers[q] = (user_id, staff)
        logger.debug('User %s connected to SSE stream', user_id)
        return q

    def unsubscribe(self, q):
        with self._lock:
            entry = self._subscribers.pop(q, None)
        if entry:
            logger.debug('User %s disconnected from SSE stream', entry[0])

    def subscriber_count(self, user_id=None):
        with self._lock:
            if user_id is None:
                return len(self._subscribers)
            return sum(1 for uid, _ in self._subscribers.values() if uid == user_id)

    def publish(self, event, payload, user_ids=(), staff=False):
        """Queue ``event`` for the listed users, plus every staff stream when ``staff``."""
        message = f'event: {event}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n'
        targets = set(user_ids or ())
        with self._lock:
            queues = [q for q, (uid, is_staff) in self._subscribers.items()
                      if uid in targets or (staff and is_staff)]
        for q in queues:
            q.put_nowait(message)
        return len(queues)

    def stream(self, user_id, staff=False, heartbeat=HEARTBEAT_SECONDS):
        """Generator of SSE frames for one connection; subscribes on first frame, unsubscribes when closed."""
        q = self.subscribe(user_id, staff=staff)
        try:
            yield f'retry: {SSE_RETRY_MS}\n\n'
            hello = {'type': 'connected', 'pollInterval': POLL_INTERVAL_SECONDS}
            yield f'event: connected\ndata: {json.dumps(hello)}\n\n'
            while True:
                try:
                    yield q.get(timeout=heartbeat)
                except queue.Empty:
                    yield ': ping\n\n'
        finally:
            self.unsubscribe(q)


# --- E-mail ---
@dataclass
class EmailResult:
    success: bool
    message: str
    temp_password: Optional[str] = None

    def to_dict(self):
        body = {'success': self.success, 'message': self.message}
        if self.temp_password is not None:
            body['tempPassword'] = self.temp_password
        return body


class Mailer:
    """Plain-text mail over SMTP, or a logged console copy when SMTP is not configured."""

    def __init__(self, host=None, port=None, user=None, password=None, sender=None, timeout=30):
        self.host = host
        self.port = int(port) if port else None
        self.user = user
        self.password = password
        self.sender = sender or user
        self.timeout = timeout

    @classmethod
    def from_config(cls, config):
        return cls(
            host=config.get('SMTP_HOST'),
            port=config.get('SMTP_PORT'),
            user=config.get('SMTP_USER'),
            password=config.get('SMTP_PASS'),
            sender=config.get('SMTP_FROM'),
        )

    @property
    def configured(self):
        return bool(self.host and self.port and self.user and self.password)

    def send(self, to_email, subject, body):
        if not self.configured:
            logger.info('EMAIL (console fallback) to=%s subject=%s\n%s', to_email, subject, body)
            return EmailResult(True, 'Console email logged')

        msg = MIMEText(body)
        msg['Subject'] = subject
        msg['From'] = f'IT Support System <{self.sender}>'
        msg['To'] = to_email
        try:
            if self.port == 465:
                server = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
            else:
                server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
            with server:
                if self.port != 465:
                    server.starttls()
                server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning('Email to %s failed: %s', to_email, e)
            return EmailResult(False, 'Failed to send email')
        logger.info('Email sent to %s: %s', to_email, subject)
        return EmailResult(True, 'Email sent')


# --- Outbox ---
class Notifier:
    def __init__(self, mailer=None, hub=None, base_url=None):
        self.mailer = mailer or Mailer()
        self.hub = hub or EventHub()
        self.base_url = base_url

    def init_app(self, app):
        self.mailer = Mailer.from_config(app.config)
        self.base_url = app.config.get('PUBLIC_BASE_URL')
        app.extensions['notifier'] = self

    def _url(self, path):
        base = self.base_url
        if not base and has_request_context():
            base = request.host_url
        return f"{(base or '').rstrip('/')}{path}"

    def _ticket_url(self, ticket):
        return self._url(f'/ticket/{ticket.id}')

    # channels

    def _mail(self, user, subject, body, preference=True):
        """Send mail; ``preference`` means the user's email_notifications switch applies."""
        if not user or not user.email:
            return None
        if preference and not user.email_notifications:
            return None
        try:
            return self.mailer.send(user.email, subject, body)
        except Exception as e:
            logger.warning('Mailer error for %s: %s', user.email, e)
            return EmailResult(False, 'Failed to send email')

    def _in_app(self, user, type_, title, message, data=None):
        if not user:
            return None
        try:
            notification = storage.create_notification(user.id, type_, title, message, data)
        except Exception as e:
            logger.warning('In-app notification %s for user %s failed: %s', type_, user.id, e)
            return None
        if user.push_notifications:
            self._push('notification', {
                'type': 'notification',
                'notificationType': type_,
                'userId': user.id,
                'ticketId': (data or {}).get('ticketId'),
            }, user_ids=[user.id])
        return notification

    def _push(self, event, payload, user_ids=(), staff=False):
        try:
            self.hub.publish(event, payload, user_ids=user_ids, staff=staff)
        except Exception as e:
            logger.warning('Push of %s failed: %s', event, e)

    # account events

    def user_created(self, user, temp_password):
        body = (
            f'Hello {user.display_name},\n\n'
            'Your account has been created in the IT Support System.\n\n'
            f'Email: {user.email}\n'
            f'Temporary password: {temp_password}\n\n'
            'Please change this password after your first login.\n'
            f'Login: {self._url("/login")}'
        )
        result = self._mail(user, 'Welcome to IT Support System - Your Account Details', body, preference=False)
        self._in_app(user, 'welcome', 'Welcome', 'Your account has been created')
        return self._credential_result(result, 'Welcome email sent successfully', temp_password)

    def password_reset(self, user, temp_password):
        body = (
            f'Hello {user.display_name},\n\n'
            'Your password has been reset.\n\n'
            f'Temporary password: {temp_password}\n\n'
            f'Login: {self._url("/login")}'
        )
        result = self._mail(user, 'Password Reset - IT Support System', body, preference=False)
        self._in_app(user, 'password_reset', 'Password Reset', 'Your password was reset')
        return self._credential_result(result, 'Password reset email sent successfully', temp_password)

    def _credential_result(self, result, ok_message, temp_password):
        if result is None or not result.success:
            return EmailResult(
                False,
                'Failed to send email. Please share credentials manually.',
                temp_password,
            )
        if not self.mailer.configured:
            ok_message = 'Email service not configured; credentials logged to console'
        return EmailResult(True, ok_message, temp_password)

    # ticket events

    def ticket_created(self, ticket, creator):
        data = {'ticketId': ticket.id}
        self._push('ticket_created', data, user_ids=[creator.id], staff=True)
        url = self._ticket_url(ticket)

        self._in_app(creator, 'ticket_created', 'Ticket Created',
                     f'Your ticket "{ticket.title}" was created successfully', data)
        self._mail(creator, f'Ticket Created: {ticket.title}',
                   f'Your ticket "{ticket.title}" has been created.\n\nOpen: {url}\nTicket ID: {ticket.id}')

        for staff in storage.list_users_by_roles(['it_staff'], active_only=True):
            if staff.id == creator.id:
                continue
            self._in_app(staff, 'ticket_new_unassigned', 'New Ticket Submitted',
                         f'New ticket "{ticket.title}" requires triage', data)
            self._mail(staff, f'New Ticket: {ticket.title}',
                       f'A new ticket "{ticket.title}" requires triage.\n\nOpen: {url}\nTicket ID: {ticket.id}')

    def ticket_updated(self, ticket, actor, status_changed=False):
        self._push('ticket_updated', {'ticketId': ticket.id, 'status': ticket.status},
                   user_ids=[ticket.created_by_id], staff=True)
        creator = ticket.created_by
        if status_changed and creator is not None and creator.id != actor.id:
            self._in_app(creator, 'ticket_status_changed', 'Ticket Status Updated',
                         f'Your ticket "{ticket.title}" is now {ticket.status.replace("_", " ")}',
                         {'ticketId': ticket.id, 'status': ticket.status})

    def ticket_assigned(self, ticket, assignee):
        data = {'ticketId': ticket.id}
        self._push('ticket_assigned', {'ticketId': ticket.id, 'assignedToId': assignee.id},
                   user_ids=[ticket.created_by_id, assignee.id], staff=True)
        url = self._ticket_url(ticket)

        self._in_app(assignee, 'ticket_assigned', 'New Ticket Assigned',
                     f'You have been assigned ticket "{ticket.title}"', data)
        self._mail(assignee, f'Ticket Assigned: {ticket.title}',
                   f'You have been assigned to ticket "{ticket.title}".\n\nOpen: {url}\nTicket ID: {ticket.id}')

        creator = ticket.created_by
        if creator is not None and creator.id != assignee.id:
            name = assignee.first_name or assignee.email
            self._in_app(creator, 'ticket_assigned_creator', 'Ticket Assigned',
                         f'Your ticket "{ticket.title}" was assigned to {name}', data)
            self._mail(creator, f'Ticket Assigned: {ticket.title}',
                       f'{name} has been assigned to your ticket "{ticket.title}".\n\nOpen: {url}\nTicket ID: {ticket.id}')

    def comment_added(self, ticket, comment, author):
        data = {'ticketId': ticket.id, 'commentId': comment.id}
        owners = [] if comment.is_internal else [ticket.created_by_id]
        self._push('ticket_commented', data, user_ids=owners, staff=True)
        url = self._ticket_url(ticket)
        name = author.first_name or author.email

        targets = {}
        for user in (ticket.created_by, ticket.assigned_to):
            if user is not None and user.id != author.id:
                targets[user.id] = user
        for user in targets.values():
            if comment.is_internal and not can_view_internal_comments(user):
                continue
            self._in_app(user, 'ticket_commented', 'New Comment',
                         f'New comment on ticket "{ticket.title}"', data)
            self._mail(user, f'New Comment: {ticket.title}',
                       f'{name} added a comment on "{ticket.title}".\n\nOpen: {url}\nTicket ID: {ticket.id}')

    def ticket_deleted(self, ticket_id, created_by_id):
        self._push('ticket_deleted', {'ticketId': ticket_id}, user_ids=[created_by_id], staff=True)


hub = EventHub()
notifier = Notifier(hub=hub)
