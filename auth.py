# auth.py
import logging
import secrets
import string
from datetime import timedelta
from functools import wraps

from flask import current_app, g, session
from werkzeug.security import check_password_hash, generate_password_hash

import storage
from errors import AuthenticationError, DeactivatedAccountError
from models import utcnow
from policy import require

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = 'INVALID_CREDENTIALS'
PASSWORD_SYMBOLS = '!@#$%^&*'


def hash_password(password):
    return generate_password_hash(password)


def verify_password(password_hash, password):
    if not password_hash or not password:
        return False
    return check_password_hash(password_hash, password)


def generate_password(length=12):
    """Temporary password with at least one lowercase, uppercase, digit and symbol."""
    classes = [string.ascii_lowercase, string.ascii_uppercase, string.digits, PASSWORD_SYMBOLS]
    alphabet = ''.join(classes)
    chars = [secrets.choice(c) for c in classes]
    chars += [secrets.choice(alphabet) for _ in range(length - len(chars))]
    secrets.SystemRandom().shuffle(chars)
    return ''.join(chars)


def login(email, password):
    """Check credentials and open a server-side session.

    Unknown e-mail and wrong password fail identically; a deactivated
    account is only reported once the password has been verified.
    """
    user = storage.get_user_by_email(email)
    if user is None or not verify_password(user.password, password):
        logger.info('Failed login for %s', email)
        raise AuthenticationError('Invalid email or password', code=INVALID_CREDENTIALS)
    if not user.is_active:
        raise DeactivatedAccountError()
    start_session(user)
    logger.info('User %s logged in', user.id)
    return user


def start_session(user):
    lifetime = timedelta(days=current_app.config['SESSION_LIFETIME_DAYS'])
    record = storage.create_session(user, lifetime)
    session.clear()
    session['sid'] = record.sid
    session.permanent = True
    g.current_user = user
    return record


def end_session():
    sid = session.pop('sid', None)
    if sid:
        storage.delete_session(sid)
    session.clear()
    g.pop('current_user', None)


def current_user():
    """Resolve the signed-in user, failing closed.

    Raises AuthenticationError when there is no live session, and
    DeactivatedAccountError (after destroying the session) when the account
    has been switched off. Sessions of deleted users are destroyed too.
    """
    if 'current_user' in g:
        return g.current_user

    sid = session.get('sid')
    record = storage.get_session(sid)
    if record is None:
        session.clear()
        raise AuthenticationError()
    if record.expires_at <= utcnow():
        end_session()
        raise AuthenticationError('Session expired')

    user = storage.get_user(record.user_id)
    if user is None:
        end_session()
        raise AuthenticationError()
    if not user.is_active:
        end_session()
        raise DeactivatedAccountError()

    g.current_user = user
    return user


def login_required(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        current_user()
        return view(*args, **kwargs)
    return wrapper


def capability_required(capability, message=None):
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            require(current_user(), capability, message)
            return view(*args, **kwargs)
        return wrapper
    return decorator
