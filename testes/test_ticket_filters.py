from types import SimpleNamespace

import pytest

from errors import ValidationError
from ticket_filters import build_ticket_filter


END_USER = SimpleNamespace(id=5, role='end_user')
STAFF = SimpleNamespace(id=9, role='it_staff')


def test_end_user_is_pinned_to_own_tickets():
    f = build_ticket_filter(END_USER, {'createdById': '1', 'assignedToId': '9', 'status': 'all'})
    assert f.created_by_id == 5
    assert f.assigned_to_id == 9
    assert f.status is None


def test_staff_is_not_scoped():
    f = build_ticket_filter(STAFF, {})
    assert f.created_by_id is None
    assert f.sort_by == 'created_at'
    assert f.sort_order == 'desc'


def test_filters_are_parsed():
    f = build_ticket_filter(STAFF, {
        'status': 'pending',
        'priority': 'critical',
        'category': 'network',
        'search': '  vpn  ',
        'sortBy': 'priority',
        'sortOrder': 'ASC',
        'limit': '10',
        'offset': '20',
    })
    assert (f.status, f.priority, f.category) == ('pending', 'critical', 'network')
    assert f.search == 'vpn'
    assert f.sort_by == 'priority'
    assert f.sort_order == 'asc'
    assert (f.limit, f.offset) == (10, 20)


@pytest.mark.parametrize('params', [
    {'status': 'archived'},
    {'priority': 'urgent'},
    {'category': 'printers'},
    {'sortBy': 'title'},
    {'sortOrder': 'sideways'},
    {'limit': '-1'},
    {'offset': 'abc'},
    {'assignedToId': 'me'},
])
def test_invalid_parameters_are_rejected(params):
    with pytest.raises(ValidationError):
        build_ticket_filter(STAFF, params)


def test_blank_search_means_no_search():
    assert build_ticket_filter(STAFF, {'search': '   '}).search is None
