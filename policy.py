# policy.py
"""Role-based visibility and ticket lifecycle rules.

Everything here is a pure function of the objects passed in: anything with
``id``/``role`` works as a user and anything with ``created_by_id``/
``status``/``assigned_to_id``/``resolved_at`` works as a ticket, so the
rules can be exercised without a database.
"""
from enum import Enum

from errors import AuthorizationError, InvalidAssigneeError, ValidationError
from models import TICKET_STATUSES


class Role(str, Enum):
    END_USER = 'end_user'
    IT_STAFF = 'it_staff'
    MANAGER = 'manager'
    ADMIN = 'admin'


class Capability(Enum):
    VIEW_ALL_TICKETS = 'view_all_tickets'
    UPDATE_TICKETS = 'update_tickets'
    DELETE_ANY_TICKET = 'delete_any_ticket'
    ASSIGN_TICKETS = 'assign_tickets'
    RECEIVE_ASSIGNMENTS = 'receive_assignments'
    POST_INTERNAL_COMMENTS = 'post_internal_comments'
    VIEW_INTERNAL_COMMENTS = 'view_internal_comments'
    VIEW_ANALYTICS = 'view_analytics'
    MANAGE_KNOWLEDGE_BASE = 'manage_knowledge_base'
    MANAGE_USERS = 'manage_users'


_STAFF_CAPABILITIES = frozenset({
    Capability.VIEW_ALL_TICKETS,
    Capability.UPDATE_TICKETS,
    Capability.DELETE_ANY_TICKET,
    Capability.ASSIGN_TICKETS,
    Capability.RECEIVE_ASSIGNMENTS,
    Capability.POST_INTERNAL_COMMENTS,
    Capability.VIEW_INTERNAL_COMMENTS,
    Capability.VIEW_ANALYTICS,
})

ROLE_CAPABILITIES = {
    Role.END_USER: frozenset(),
    Role.IT_STAFF: _STAFF_CAPABILITIES,
    Role.MANAGER: _STAFF_CAPABILITIES | {Capability.MANAGE_KNOWLEDGE_BASE},
    Role.ADMIN: _STAFF_CAPABILITIES | {Capability.MANAGE_KNOWLEDGE_BASE, Capability.MANAGE_USERS},
}

STAFF_ROLES = frozenset({Role.IT_STAFF, Role.MANAGER, Role.ADMIN})


def as_role(value):
    """Coerce a role string (or Role) to Role; unknown values are rejected."""
    try:
        return Role(value)
    except ValueError:
        raise ValidationError(f'Invalid role: {value}')


def has_capability(role, capability):
    return capability in ROLE_CAPABILITIES[as_role(role)]


def is_staff(user):
    return as_role(user.role) in STAFF_ROLES


def require(user, capability, message=None):
    if not has_capability(user.role, capability):
        raise AuthorizationError(message)


def can_list_ticket(user, ticket):
    return has_capability(user.role, Capability.VIEW_ALL_TICKETS) or ticket.created_by_id == user.id


# Detail view, commenting and attachment access share the listing rule.
can_view_ticket = can_list_ticket


def can_mutate_ticket_status(user):
    return has_capability(user.role, Capability.UPDATE_TICKETS)


def can_delete_ticket(user, ticket):
    if ticket.created_by_id == user.id and ticket.status == 'new':
        return True
    return has_capability(user.role, Capability.DELETE_ANY_TICKET)


def can_assign(user):
    return has_capability(user.role, Capability.ASSIGN_TICKETS)


def can_receive_assignment(user):
    return has_capability(user.role, Capability.RECEIVE_ASSIGNMENTS) and bool(user.is_active)


def can_post_internal_comment(user):
    return has_capability(user.role, Capability.POST_INTERNAL_COMMENTS)


def can_view_internal_comments(user):
    return has_capability(user.role, Capability.VIEW_INTERNAL_COMMENTS)


def can_delete_attachment(user, ticket, attachment):
    if has_capability(user.role, Capability.UPDATE_TICKETS):
        return True
    return attachment.uploaded_by_id == user.id and can_view_ticket(user, ticket)


def check_assignee(assignee):
    if not can_receive_assignment(assignee):
        raise InvalidAssigneeError()


def visible_comments(user, comments):
    if can_view_internal_comments(user):
        return list(comments)
    return [c for c in comments if not c.is_internal]


def apply_status_change(ticket, status, now):
    """Set the status; moving to "resolved" stamps resolved_at, nothing clears it."""
    if status not in TICKET_STATUSES:
        raise ValidationError(f'Invalid status: {status}')
    ticket.status = status
    if status == 'resolved':
        ticket.resolved_at = now
    return ticket


def apply_assignment(ticket, assignee):
    """Assign the ticket (or unassign with None); a new ticket starts progress."""
    if assignee is None:
        ticket.assigned_to_id = None
        return ticket
    check_assignee(assignee)
    ticket.assigned_to_id = assignee.id
    if ticket.status == 'new':
        ticket.status = 'in_progress'
    return ticket
