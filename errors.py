# errors.py
"""Exception taxonomy for the API.

Route handlers and services raise these; ``app.py`` registers one error
handler that renders them as ``{"message": ..., "code": ...}``.
"""


class HelpdeskError(Exception):
    status_code = 500
    code = None
    default_message = 'Internal server error'

    def __init__(self, message=None, code=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        if code is not None:
            self.code = code

    def to_dict(self):
        body = {'message': self.message}
        if self.code:
            body['code'] = self.code
        return body


class AuthenticationError(HelpdeskError):
    status_code = 401
    default_message = 'Unauthorized'


class DeactivatedAccountError(AuthenticationError):
    code = 'ACCOUNT_DEACTIVATED'
    default_message = 'Account is deactivated. Please contact an administrator to reactivate your account.'


class AuthorizationError(HelpdeskError):
    status_code = 403
    default_message = 'Access denied'


class NotFoundError(HelpdeskError):
    status_code = 404
    default_message = 'Not found'


class ValidationError(HelpdeskError):
    status_code = 400
    default_message = 'Invalid request'


class InvalidAssigneeError(ValidationError):
    code = 'INVALID_ASSIGNEE'
    default_message = 'Can only assign tickets to active IT staff, managers, or admins'


class ConflictError(HelpdeskError):
    status_code = 409
    default_message = 'Conflict'
