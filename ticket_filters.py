# ticket_filters.py
from dataclasses import dataclass
from typing import Optional

from errors import ValidationError
from models import TICKET_CATEGORIES, TICKET_PRIORITIES, TICKET_STATUSES
from policy import Capability, has_capability

SORT_FIELDS = {
    'createdAt': 'created_at',
    'updatedAt': 'updated_at',
    'priority': 'priority',
    'status': 'status',
}
SORT_ORDERS = ('asc', 'desc')


@dataclass
class TicketFilter:
    status: Optional[str] = None
    priority: Optional[str] = None
    category: Optional[str] = None
    assigned_to_id: Optional[int] = None
    created_by_id: Optional[int] = None
    search: Optional[str] = None
    sort_by: str = 'created_at'
    sort_order: str = 'desc'
    limit: Optional[int] = None
    offset: Optional[int] = None


def _choice(params, key, allowed):
    value = (params.get(key) or '').strip()
    if not value or value == 'all':
        return None
    if value not in allowed:
        raise ValidationError(f'Invalid {key}: {value}')
    return value


def _non_negative_int(params, key):
    raw = params.get(key)
    if raw in (None, ''):
        return None
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f'{key} must be an integer')
    if value < 0:
        raise ValidationError(f'{key} must not be negative')
    return value


def build_ticket_filter(user, params):
    """Turn query parameters into a TicketFilter scoped to what ``user`` may list.

    End users are pinned to their own tickets; no parameter can widen that.
    """
    sort_key = (params.get('sortBy') or 'createdAt').strip()
    if sort_key not in SORT_FIELDS:
        raise ValidationError(f'Invalid sortBy: {sort_key}')
    sort_order = (params.get('sortOrder') or 'desc').strip().lower()
    if sort_order not in SORT_ORDERS:
        raise ValidationError(f'Invalid sortOrder: {sort_order}')

    search = (params.get('search') or '').strip() or None

    ticket_filter = TicketFilter(
        status=_choice(params, 'status', TICKET_STATUSES),
        priority=_choice(params, 'priority', TICKET_PRIORITIES),
        category=_choice(params, 'category', TICKET_CATEGORIES),
        assigned_to_id=_non_negative_int(params, 'assignedToId'),
        search=search,
        sort_by=SORT_FIELDS[sort_key],
        sort_order=sort_order,
        limit=_non_negative_int(params, 'limit'),
        offset=_non_negative_int(params, 'offset'),
    )
    if not has_capability(user.role, Capability.VIEW_ALL_TICKETS):
        ticket_filter.created_by_id = user.id
    return ticket_filter
