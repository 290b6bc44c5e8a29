from dotenv import load_dotenv
load_dotenv()

from flask import Flask, request, redirect, jsonify, send_from_directory, Response, stream_with_context
from datetime import timedelta
import secrets
import os
import re
import logging
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
from werkzeug.middleware.proxy_fix import ProxyFix

import analytics
import auth
import services
import storage
from database import get_database_url
from errors import HelpdeskError, ValidationError
from models import db, TICKET_CATEGORIES, TICKET_PRIORITIES, TICKET_STATUSES, CONTACT_PREFERENCES, THEMES
from notifications import hub, notifier
from policy import Capability, is_staff
from serializers import (
    article_to_dict, attachment_to_dict, comment_to_dict, notification_to_dict, settings_to_dict,
    ticket_detail, ticket_to_dict, user_to_dict,
)

app = Flask(__name__)

DEVELOPMENT = (os.environ.get('FLASK_ENV') or os.environ.get('NODE_ENV')) == 'development'

# Cookie signing key; mandatory outside development
secret = os.environ.get('SESSION_SECRET') or os.environ.get('SECRET_KEY')
if not secret:
    secret = secrets.token_hex(32) if DEVELOPMENT else None
if secret is None:
    raise RuntimeError('SESSION_SECRET is not set in production')
app.secret_key = secret

SESSION_LIFETIME_DAYS = int(os.environ.get('SESSION_LIFETIME_DAYS', 7))
app.permanent_session_lifetime = timedelta(days=SESSION_LIFETIME_DAYS)

# Trust the reverse proxy (X-Forwarded-Proto/Host)
app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)

app.config['SQLALCHEMY_DATABASE_URI'] = get_database_url()
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

# Session/security settings and global upload limit
app.config.update(
    SESSION_COOKIE_SECURE=not DEVELOPMENT,
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE='Lax',
    MAX_CONTENT_LENGTH=50 * 1024 * 1024,  # 50MB global
    PREFERRED_URL_SCHEME='http' if DEVELOPMENT else 'https',
    SESSION_LIFETIME_DAYS=SESSION_LIFETIME_DAYS,
    UPLOAD_FOLDER=os.environ.get('UPLOAD_FOLDER') or os.path.join(os.path.dirname(os.path.abspath(__file__)), 'uploads'),
    MAX_ATTACHMENT_SIZE=int(os.environ.get('MAX_ATTACHMENT_SIZE', 10 * 1024 * 1024)),  # 10MB per file
    SMTP_HOST=os.environ.get('SMTP_HOST'),
    SMTP_PORT=os.environ.get('SMTP_PORT'),
    SMTP_USER=os.environ.get('SMTP_USER'),
    SMTP_PASS=os.environ.get('SMTP_PASS'),
    SMTP_FROM=os.environ.get('SMTP_FROM'),
    PUBLIC_BASE_URL=os.environ.get('PUBLIC_BASE_URL'),
)
os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)

logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO'),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s'
)
logger = logging.getLogger(__name__)

db.init_app(app)
notifier.init_app(app)

# Make sure the tables exist when the app starts
with app.app_context():
    db.create_all()
    storage.purge_expired_sessions()
    logger.info('Database initialised')

EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
PASSWORD_RESET_MESSAGE = 'If an account exists for this email, a temporary password has been sent.'
IMMUTABLE_TICKET_FIELDS = ('id', 'createdById', 'createdAt', 'resolvedAt')


@app.before_request
def enforce_https():
    # Outside production skip the redirect
    if DEVELOPMENT or app.debug or app.testing:
        return
    if request.scheme != 'https':
        url = request.url.replace('http://', 'https://', 1)
        return redirect(url, code=301)


# Security headers
@app.after_request
def set_security_headers(resp):
    resp.headers['X-Content-Type-Options'] = 'nosniff'
    resp.headers['X-Frame-Options'] = 'SAMEORIGIN'
    resp.headers['Referrer-Policy'] = 'no-referrer'
    resp.headers['Content-Security-Policy'] = "default-src 'none'; frame-ancestors 'none';"
    return resp


@app.errorhandler(HelpdeskError)
def handle_helpdesk_error(e):
    db.session.rollback()
    return jsonify(e.to_dict()), e.status_code


@app.errorhandler(RequestEntityTooLarge)
def handle_too_large(e):
    limit_mb = app.config['MAX_CONTENT_LENGTH'] // (1024 * 1024)
    return jsonify({'message': f'Request too large. The limit is {limit_mb}MB per request.'}), 413


@app.errorhandler(HTTPException)
def handle_http_error(e):
    return jsonify({'message': e.description}), e.code


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    db.session.rollback()
    logger.exception('Unhandled error on %s %s', request.method, request.path)
    return jsonify({'message': 'Internal server error'}), 500


# Health check
@app.get('/healthz')
def healthz():
    return {'status': 'ok'}, 200


@app.route('/')
def index():
    return {'name': 'IT Help Desk API', 'status': 'ok'}


# --- Request helpers ---

def _payload():
    """JSON body or form fields, whichever the client sent."""
    if request.is_json:
        data = request.get_json(silent=True)
        if data is not None and not isinstance(data, dict):
            raise ValidationError('Expected a JSON object')
        return data or {}
    return request.form


def _text(data, key, required=False, max_length=None):
    value = data.get(key)
    if value is None:
        if required:
            raise ValidationError(f'{key} is required')
        return None
    if not isinstance(value, str):
        raise ValidationError(f'{key} must be a string')
    value = value.strip()
    if required and not value:
        raise ValidationError(f'{key} is required')
    if max_length and len(value) > max_length:
        raise ValidationError(f'{key} must be at most {max_length} characters')
    return value


def _choice(data, key, allowed, required=False):
    value = data.get(key)
    if value in (None, ''):
        if required:
            raise ValidationError(f'{key} is required')
        return None
    if value not in allowed:
        raise ValidationError(f'Invalid {key}: {value}')
    return value


def _as_bool(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ('true', '1', 'on', 'yes')
    return bool(value)


def _user_id(value, key='assignedToId'):
    if value in (None, '', 'null'):
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    raise ValidationError(f'{key} must be a user id')


def _email(data, required=True):
    email = _text(data, 'email', required=required, max_length=255)
    if email is not None and not EMAIL_RE.match(email):
        raise ValidationError('Invalid email address')
    return email


def _pagination():
    values = []
    for key in ('limit', 'offset'):
        raw = request.args.get(key)
        if raw in (None, ''):
            values.append(None)
            continue
        try:
            value = int(raw)
        except ValueError:
            raise ValidationError(f'{key} must be an integer')
        if value < 0:
            raise ValidationError(f'{key} must not be negative')
        values.append(value)
    return values


# --- Auth ---

def _validate_login_data(data):
    """Returns (email, password); both are required."""
    email = data.get('email')
    password = data.get('password')
    if not email or not password or not isinstance(email, str) or not isinstance(password, str):
        raise ValidationError('Email and password are required')
    return email.strip(), password


@app.route('/api/login', methods=['POST'])
def api_login():
    email, password = _validate_login_data(_payload())
    user = auth.login(email, password)
    if not request.is_json:
        return redirect('/')
    return jsonify(user_to_dict(user))


@app.route('/api/logout')
def api_logout():
    auth.end_session()
    return jsonify({'message': 'Logged out'})


@app.route('/api/auth/user')
@auth.login_required
def api_auth_user():
    return jsonify(user_to_dict(auth.current_user()))


@app.route('/api/users/reset-password', methods=['POST'])
def api_request_password_reset():
    email = _email(_payload())
    services.request_password_reset(email)
    return jsonify({'message': PASSWORD_RESET_MESSAGE})


# --- Tickets ---

def _validate_ticket_data(data):
    """Clean the fields of a new ticket; raises ValidationError."""
    return {
        'title': _text(data, 'title', required=True, max_length=255),
        'description': _text(data, 'description', required=True),
        'category': _choice(data, 'category', TICKET_CATEGORIES, required=True),
        'priority': _choice(data, 'priority', TICKET_PRIORITIES, required=True),
        'contact_phone': _text(data, 'contactPhone', max_length=20),
        'contact_preference': _choice(data, 'contactPreference', CONTACT_PREFERENCES) or 'email',
        'best_time_to_contact': _text(data, 'bestTimeToContact', max_length=100),
        'location': _text(data, 'location', max_length=100),
    }


def _validate_ticket_update(data):
    """Returns (fields, status, assignedToId or the 'unset' marker)."""
    for key in IMMUTABLE_TICKET_FIELDS:
        if key in data:
            raise ValidationError(f'{key} cannot be changed')

    fields = {}
    for key, attr, max_length in (
        ('title', 'title', 255),
        ('description', 'description', None),
        ('contactPhone', 'contact_phone', 20),
        ('bestTimeToContact', 'best_time_to_contact', 100),
        ('location', 'location', 100),
    ):
        if key in data:
            fields[attr] = _text(data, key, required=key in ('title', 'description'), max_length=max_length)
    for key, attr, allowed in (
        ('category', 'category', TICKET_CATEGORIES),
        ('priority', 'priority', TICKET_PRIORITIES),
        ('contactPreference', 'contact_preference', CONTACT_PREFERENCES),
    ):
        if key in data:
            fields[attr] = _choice(data, key, allowed, required=True)

    status = _choice(data, 'status', TICKET_STATUSES) if 'status' in data else None
    assigned_to_id = services.UNSET
    if 'assignedToId' in data:
        assigned_to_id = _user_id(data.get('assignedToId'))
    return fields, status, assigned_to_id


@app.route('/api/tickets', methods=['GET'])
@auth.login_required
def api_get_tickets():
    """
    Lists tickets.
    - IT staff, managers and admins see every ticket.
    - End users only see their own, whatever the query says.
    """
    tickets = services.list_tickets(auth.current_user(), request.args)
    return jsonify([ticket_to_dict(t) for t in tickets])


@app.route('/api/tickets', methods=['POST'])
@auth.login_required
def api_create_ticket():
    """
    Creates a ticket from JSON or multipart/form-data (fields plus 'attachments' files).
    """
    if request.mimetype == 'multipart/form-data':
        data = request.form
        files = request.files.getlist('attachments')
    else:
        data = _payload()
        files = []
    fields = _validate_ticket_data(data)
    ticket = services.create_ticket(auth.current_user(), fields, files)
    return jsonify(ticket_to_dict(ticket)), 201


@app.route('/api/tickets/<int:ticket_id>', methods=['GET'])
@auth.login_required
def api_get_ticket(ticket_id):
    ticket, comments, files = services.ticket_detail(auth.current_user(), ticket_id)
    return jsonify(ticket_detail(ticket, comments, files))


@app.route('/api/tickets/<int:ticket_id>', methods=['PATCH'])
@auth.login_required
def api_update_ticket(ticket_id):
    fields, status, assigned_to_id = _validate_ticket_update(_payload())
    ticket = services.update_ticket(
        auth.current_user(), ticket_id, fields, status=status, assigned_to_id=assigned_to_id
    )
    return jsonify(ticket_to_dict(ticket))


@app.route('/api/tickets/<int:ticket_id>', methods=['DELETE'])
@auth.login_required
def api_delete_ticket(ticket_id):
    services.delete_ticket(auth.current_user(), ticket_id)
    return jsonify({'message': 'Ticket deleted successfully'})


@app.route('/api/tickets/<int:ticket_id>/assign', methods=['POST'])
@auth.login_required
def api_assign_ticket(ticket_id):
    data = _payload()
    if 'assignedToId' not in data:
        raise ValidationError('assignedToId is required')
    ticket = services.assign_ticket(auth.current_user(), ticket_id, _user_id(data.get('assignedToId')))
    return jsonify(ticket_to_dict(ticket))


# --- Comments ---

@app.route('/api/tickets/<int:ticket_id>/comments', methods=['GET'])
@auth.login_required
def api_get_comments(ticket_id):
    comments = services.list_comments(auth.current_user(), ticket_id)
    return jsonify([comment_to_dict(c) for c in comments])


@app.route('/api/tickets/<int:ticket_id>/comments', methods=['POST'])
@auth.login_required
def api_create_comment(ticket_id):
    data = _payload()
    content = _text(data, 'content', required=True)
    comment = services.add_comment(
        auth.current_user(), ticket_id, content, is_internal=_as_bool(data.get('isInternal', False))
    )
    return jsonify(comment_to_dict(comment)), 201


# --- Attachments ---

@app.route('/api/tickets/<int:ticket_id>/attachments', methods=['GET'])
@auth.login_required
def api_get_attachments(ticket_id):
    files = services.list_attachments(auth.current_user(), ticket_id)
    return jsonify([attachment_to_dict(a) for a in files])


@app.route('/api/tickets/<int:ticket_id>/attachments', methods=['POST'])
@auth.login_required
def api_upload_attachments(ticket_id):
    saved = services.upload_attachments(auth.current_user(), ticket_id, request.files.getlist('attachments'))
    return jsonify([attachment_to_dict(a) for a in saved]), 201


@app.route('/api/tickets/<int:ticket_id>/attachments/<int:attachment_id>/download')
@auth.login_required
def api_download_attachment(ticket_id, attachment_id):
    attachment = services.attachment_for_download(auth.current_user(), ticket_id, attachment_id)
    return send_from_directory(
        app.config['UPLOAD_FOLDER'],
        attachment.file_path,
        as_attachment=True,
        download_name=attachment.file_name,
        mimetype=attachment.mime_type,
    )


@app.route('/api/tickets/<int:ticket_id>/attachments/<int:attachment_id>', methods=['DELETE'])
@auth.login_required
def api_delete_attachment(ticket_id, attachment_id):
    services.delete_attachment(auth.current_user(), ticket_id, attachment_id)
    return jsonify({'message': 'Attachment deleted successfully'})


# --- Users ---

def _validate_user_data(data, partial=False):
    """Admin-editable account fields (firstName, lastName, email, role, isActive)."""
    fields = {}
    if not partial or 'firstName' in data:
        fields['first_name'] = _text(data, 'firstName', required=True, max_length=100)
    if not partial or 'lastName' in data:
        fields['last_name'] = _text(data, 'lastName', required=True, max_length=100)
    if not partial or 'email' in data:
        fields['email'] = _email(data)
    if 'role' in data:
        fields['role'] = data.get('role')
    if 'isActive' in data:
        fields['is_active'] = _as_bool(data.get('isActive'))
    return fields


def _validate_settings_data(data):
    """Profile and preference fields a user may change on their own account."""
    fields = {}
    for key, attr, max_length in (
        ('firstName', 'first_name', 100),
        ('lastName', 'last_name', 100),
        ('phone', 'phone', 30),
        ('timezone', 'timezone', 64),
        ('language', 'language', 10),
    ):
        if key in data:
            fields[attr] = _text(data, key, max_length=max_length)
    if 'email' in data:
        fields['email'] = _email(data)
    if 'theme' in data:
        fields['theme'] = _choice(data, 'theme', THEMES, required=True)
    for key, attr in (
        ('compactMode', 'compact_mode'),
        ('emailNotifications', 'email_notifications'),
        ('pushNotifications', 'push_notifications'),
        ('smsNotifications', 'sms_notifications'),
    ):
        if key in data:
            fields[attr] = _as_bool(data.get(key))
    return fields


@app.route('/api/users', methods=['GET'])
@auth.capability_required(Capability.MANAGE_USERS, 'Only administrators can manage users')
def api_get_users():
    users = services.list_users(auth.current_user())
    return jsonify([user_to_dict(u) for u in users])


@app.route('/api/users', methods=['POST'])
@auth.capability_required(Capability.MANAGE_USERS, 'Only administrators can manage users')
def api_create_user():
    fields = _validate_user_data(_payload())
    user, email_result = services.create_user(
        auth.current_user(),
        first_name=fields['first_name'],
        last_name=fields['last_name'],
        email=fields['email'],
        role=fields.get('role') or 'end_user',
        is_active=fields.get('is_active', True),
    )
    body = user_to_dict(user)
    body['emailResult'] = email_result.to_dict()
    return jsonify(body), 201


@app.route('/api/users/it-staff', methods=['GET'])
@auth.login_required
def api_get_it_staff():
    return jsonify(services.it_staff(auth.current_user()))


@app.route('/api/users/<int:user_id>', methods=['GET'])
@auth.login_required
def api_get_user(user_id):
    return jsonify(user_to_dict(services.get_user(auth.current_user(), user_id)))


@app.route('/api/users/<int:user_id>', methods=['PUT'])
@auth.capability_required(Capability.MANAGE_USERS, 'Only administrators can manage users')
def api_update_user(user_id):
    fields = _validate_user_data(_payload(), partial=True)
    user = services.update_user(auth.current_user(), user_id, fields)
    return jsonify(user_to_dict(user))


@app.route('/api/users/<int:user_id>/toggle-status', methods=['PATCH'])
@auth.capability_required(Capability.MANAGE_USERS, 'Only administrators can manage users')
def api_toggle_user_status(user_id):
    user = services.toggle_user_status(auth.current_user(), user_id)
    return jsonify(user_to_dict(user))


@app.route('/api/users/<int:user_id>', methods=['DELETE'])
@auth.capability_required(Capability.MANAGE_USERS, 'Only administrators can manage users')
def api_delete_user(user_id):
    services.delete_user(auth.current_user(), user_id)
    return jsonify({'message': 'User deleted successfully'})


@app.route('/api/users/<int:user_id>/reset-password', methods=['POST'])
@auth.capability_required(Capability.MANAGE_USERS, 'Only administrators can manage users')
def api_admin_reset_password(user_id):
    result = services.reset_password(auth.current_user(), user_id)
    return jsonify({'message': result.message, 'emailResult': result.to_dict()})


@app.route('/api/users/<int:user_id>/settings', methods=['GET'])
@auth.login_required
def api_get_settings(user_id):
    return jsonify(settings_to_dict(services.get_settings(auth.current_user(), user_id)))


@app.route('/api/users/<int:user_id>/settings', methods=['PUT'])
@auth.login_required
def api_update_settings(user_id):
    # role and isActive are not settings; they are ignored here
    fields = _validate_settings_data(_payload())
    user = services.update_settings(auth.current_user(), user_id, fields)
    return jsonify(settings_to_dict(user))


@app.route('/api/users/<int:user_id>/password', methods=['PUT'])
@auth.login_required
def api_change_password(user_id):
    data = _payload()
    services.change_password(
        auth.current_user(), user_id, data.get('currentPassword'), data.get('newPassword')
    )
    return jsonify({'message': 'Password updated successfully'})


# --- Knowledge base ---

def _validate_article_data(data, partial=False):
    fields = {}
    if not partial or 'title' in data:
        fields['title'] = _text(data, 'title', required=True, max_length=255)
    if not partial or 'content' in data:
        fields['content'] = _text(data, 'content', required=True)
    if not partial or 'category' in data:
        fields['category'] = _choice(data, 'category', TICKET_CATEGORIES, required=True)
    if 'tags' in data:
        tags = data.get('tags')
        if isinstance(tags, str):
            tags = [t.strip() for t in tags.split(',')]
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise ValidationError('tags must be a list of strings')
        fields['tags'] = [t.strip() for t in tags if t.strip()]
    return fields


@app.route('/api/knowledge-base', methods=['GET'])
@auth.login_required
def api_get_articles():
    limit, offset = _pagination()
    category = request.args.get('category')
    if category in ('', 'all'):
        category = None
    if category is not None and category not in TICKET_CATEGORIES:
        raise ValidationError(f'Invalid category: {category}')
    search = (request.args.get('search') or '').strip() or None
    articles = services.list_articles(category=category, search=search, limit=limit, offset=offset)
    return jsonify([article_to_dict(a) for a in articles])


@app.route('/api/knowledge-base/<int:article_id>', methods=['GET'])
@auth.login_required
def api_get_article(article_id):
    return jsonify(article_to_dict(services.read_article(article_id)))


@app.route('/api/knowledge-base', methods=['POST'])
@auth.login_required
def api_create_article():
    article = services.create_article(auth.current_user(), _validate_article_data(_payload()))
    return jsonify(article_to_dict(article)), 201


@app.route('/api/knowledge-base/<int:article_id>', methods=['PUT'])
@auth.login_required
def api_update_article(article_id):
    fields = _validate_article_data(_payload(), partial=True)
    article = services.update_article(auth.current_user(), article_id, fields)
    return jsonify(article_to_dict(article))


@app.route('/api/knowledge-base/<int:article_id>', methods=['DELETE'])
@auth.login_required
def api_delete_article(article_id):
    services.delete_article(auth.current_user(), article_id)
    return jsonify({'message': 'Article deleted successfully'})


# --- Notifications ---

@app.route('/api/notifications', methods=['GET'])
@auth.login_required
def api_get_notifications():
    only_unread = request.args.get('unread') == 'true'
    items = services.list_notifications(auth.current_user(), only_unread=only_unread)
    return jsonify([notification_to_dict(n) for n in items])


@app.route('/api/notifications/<int:notification_id>/read', methods=['POST'])
@auth.login_required
def api_mark_notification_read(notification_id):
    services.mark_notification_read(auth.current_user(), notification_id)
    return jsonify({'success': True})


@app.route('/api/notifications/clear', methods=['DELETE'])
@auth.login_required
def api_clear_notifications():
    removed = services.clear_notifications(auth.current_user())
    return jsonify({'success': True, 'removed': removed})


@app.route('/api/events')
@auth.login_required
def api_events():
    user = auth.current_user()
    gen = hub.stream(user.id, staff=is_staff(user))
    headers = {'Content-Type': 'text/event-stream', 'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'}
    return Response(stream_with_context(gen), headers=headers)


# --- Analytics ---

@app.route('/api/analytics/metrics')
@auth.capability_required(Capability.VIEW_ANALYTICS)
def api_analytics_metrics():
    return jsonify(analytics.ticket_metrics())


@app.route('/api/analytics/team-status')
@auth.capability_required(Capability.VIEW_ANALYTICS)
def api_analytics_team_status():
    return jsonify(analytics.team_status())


@app.route('/api/analytics/sla-performance')
@auth.capability_required(Capability.VIEW_ANALYTICS)
def api_analytics_sla_performance():
    return jsonify(analytics.sla_performance())


@app.route('/api/analytics/workload')
@auth.capability_required(Capability.VIEW_ANALYTICS)
def api_analytics_workload():
    return jsonify(analytics.workload(request.args.get('sortBy') or 'workload'))


@app.route('/api/analytics/breakdown')
@auth.capability_required(Capability.VIEW_ANALYTICS)
def api_analytics_breakdown():
    return jsonify(analytics.breakdown())


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=DEVELOPMENT, threaded=True)
