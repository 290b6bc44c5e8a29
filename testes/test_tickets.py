import io
import os

import storage
from models import Notification, Ticket, TicketAttachment, TicketComment, db


def _notifications(app, user_id, type_=None):
    with app.app_context():
        query = db.session.query(Notification).filter_by(user_id=user_id)
        if type_:
            query = query.filter_by(type=type_)
        return [(n.type, n.data) for n in query.order_by(Notification.id)]


def test_create_ticket_json(client, login_as, make_user):
    user = make_user()
    c = login_as(user)
    r = c.post('/api/tickets', json={
        'title': 'VPN drops every hour',
        'description': 'Disconnects at the top of the hour',
        'category': 'network',
        'priority': 'high',
        'contactPreference': 'phone',
        'contactPhone': '555-0100',
    })
    assert r.status_code == 201
    t = r.get_json()
    assert t['status'] == 'new'
    assert t['createdById'] == user.id
    assert t['assignedToId'] is None
    assert t['resolvedAt'] is None
    assert t['contactPreference'] == 'phone'
    assert t['createdBy']['id'] == user.id
    assert t['createdAt'].endswith('Z')


def test_create_ticket_multipart_with_attachments(app, login_as, make_user):
    user = make_user()
    c = login_as(user)
    r = c.post('/api/tickets', data={
        'title': 'Printer jam',
        'description': 'Tray 2',
        'category': 'hardware',
        'priority': 'low',
        'attachments': [
            (io.BytesIO(b'error log line'), 'printer.log', 'text/plain'),
            (io.BytesIO(b'%PDF-1.4 fake'), 'manual.pdf', 'application/pdf'),
        ],
    }, content_type='multipart/form-data')
    assert r.status_code == 201
    ticket_id = r.get_json()['id']

    files = c.get(f'/api/tickets/{ticket_id}/attachments').get_json()
    assert sorted(f['fileName'] for f in files) == ['manual.pdf', 'printer.log']
    assert all(f['uploadedById'] == user.id for f in files)
    assert 'filePath' not in files[0]


def test_create_ticket_rejects_bad_upload_without_writing(app, login_as, make_user):
    user = make_user()
    c = login_as(user)
    r = c.post('/api/tickets', data={
        'title': 'Strange file',
        'description': 'See attached',
        'category': 'software',
        'priority': 'low',
        'attachments': [(io.BytesIO(b'MZ...'), 'tool.exe', 'application/x-msdownload')],
    }, content_type='multipart/form-data')
    assert r.status_code == 400
    with app.app_context():
        assert db.session.query(Ticket).count() == 0


def test_create_ticket_validation(login_as, make_user):
    c = login_as(make_user())
    base = {'title': 'T', 'description': 'D', 'category': 'hardware', 'priority': 'low'}
    for override in (
        {'title': ''},
        {'description': None},
        {'category': 'printers'},
        {'priority': 'urgent'},
        {'contactPreference': 'fax'},
        {'title': 'x' * 256},
    ):
        payload = dict(base)
        payload.update(override)
        r = c.post('/api/tickets', json=payload)
        assert r.status_code == 400, override


def test_creation_notifies_creator_and_active_it_staff(app, make_user, make_ticket, mailer):
    creator = make_user()
    staff = make_user('it_staff')
    inactive_staff = make_user('it_staff', is_active=False)
    manager = make_user('manager')

    t = make_ticket(creator, title='Monitor flickers')

    assert _notifications(app, creator.id) == [('ticket_created', {'ticketId': t['id']})]
    assert _notifications(app, staff.id) == [('ticket_new_unassigned', {'ticketId': t['id']})]
    assert _notifications(app, inactive_staff.id) == []
    assert _notifications(app, manager.id) == []
    assert len(mailer.to(creator.email)) == 1
    assert len(mailer.to(staff.email)) == 1
    assert mailer.to(inactive_staff.email) == []


def test_staff_creating_ticket_is_not_notified_as_triager(app, make_user, make_ticket):
    staff = make_user('it_staff')
    make_ticket(staff)
    assert [n[0] for n in _notifications(app, staff.id)] == ['ticket_created']


def test_mailer_failure_does_not_fail_ticket_creation(make_user, make_ticket, mailer):
    mailer.fail = True
    t = make_ticket(make_user())
    assert t['id']


def test_end_user_sees_only_own_tickets(login_as, make_user, make_ticket):
    alice, bob = make_user(), make_user()
    staff = make_user('it_staff')
    mine = make_ticket(alice, title='Alice ticket')
    make_ticket(bob, title='Bob ticket')

    listed = login_as(alice).get(f'/api/tickets?createdById={bob.id}').get_json()
    assert [t['id'] for t in listed] == [mine['id']]

    assert len(login_as(staff).get('/api/tickets').get_json()) == 2


def test_list_filters_and_search(login_as, make_user, make_ticket):
    user = make_user()
    staff = make_user('it_staff')
    make_ticket(user, title='100% done', priority='low')
    make_ticket(user, title='1000 done', priority='critical')
    make_ticket(user, title='under_score', description='nothing', category='software')

    c = login_as(staff)
    titles = [t['title'] for t in c.get('/api/tickets?search=100%25').get_json()]
    assert titles == ['100% done']
    titles = [t['title'] for t in c.get('/api/tickets?search=r_s').get_json()]
    assert titles == ['under_score']
    assert [t['title'] for t in c.get('/api/tickets?category=software').get_json()] == ['under_score']
    assert len(c.get('/api/tickets?priority=all').get_json()) == 3

    by_priority = [t['priority'] for t in c.get('/api/tickets?sortBy=priority&sortOrder=desc').get_json()]
    assert by_priority == ['critical', 'medium', 'low']

    assert c.get('/api/tickets?status=archived').status_code == 400
    assert len(c.get('/api/tickets?limit=1&offset=1').get_json()) == 1


def test_ticket_detail_visibility(login_as, make_user, make_ticket):
    owner, other = make_user(), make_user()
    staff = make_user('it_staff')
    t = make_ticket(owner)

    r = login_as(owner).get(f"/api/tickets/{t['id']}")
    assert r.status_code == 200
    assert r.get_json()['comments'] == []
    assert r.get_json()['attachments'] == []

    assert login_as(other).get(f"/api/tickets/{t['id']}").status_code == 403
    assert login_as(staff).get(f"/api/tickets/{t['id']}").status_code == 200
    assert login_as(staff).get('/api/tickets/9999').status_code == 404


def test_end_user_cannot_update_ticket(login_as, make_user, make_ticket):
    owner = make_user()
    t = make_ticket(owner)
    r = login_as(owner).patch(f"/api/tickets/{t['id']}", json={'status': 'closed'})
    assert r.status_code == 403


def test_resolve_then_close_keeps_resolved_at(app, login_as, make_user, make_ticket):
    owner = make_user()
    staff = make_user('it_staff')
    t = make_ticket(owner)
    c = login_as(staff)

    r = c.patch(f"/api/tickets/{t['id']}", json={'status': 'resolved'})
    assert r.status_code == 200
    resolved_at = r.get_json()['resolvedAt']
    assert resolved_at is not None

    r = c.patch(f"/api/tickets/{t['id']}", json={'status': 'closed'})
    assert r.get_json()['status'] == 'closed'
    assert r.get_json()['resolvedAt'] == resolved_at

    # The owner is told about each status change made by someone else
    changes = _notifications(app, owner.id, 'ticket_status_changed')
    assert [d['status'] for _, d in changes] == ['resolved', 'closed']


def test_update_edits_fields(login_as, make_user, make_ticket):
    t = make_ticket(make_user())
    r = login_as(make_user('manager')).patch(f"/api/tickets/{t['id']}", json={
        'title': 'Renamed', 'priority': 'critical', 'location': 'Room 4',
    })
    assert r.status_code == 200
    body = r.get_json()
    assert (body['title'], body['priority'], body['location']) == ('Renamed', 'critical', 'Room 4')
    assert body['status'] == 'new'


def test_update_rejects_immutable_and_invalid_fields(login_as, make_user, make_ticket):
    t = make_ticket(make_user())
    c = login_as(make_user('it_staff'))
    assert c.patch(f"/api/tickets/{t['id']}", json={'createdById': 99}).status_code == 400
    assert c.patch(f"/api/tickets/{t['id']}", json={'resolvedAt': '2024-01-01'}).status_code == 400
    assert c.patch(f"/api/tickets/{t['id']}", json={'status': 'archived'}).status_code == 400
    assert c.patch(f"/api/tickets/{t['id']}", json={'title': ''}).status_code == 400
    assert c.patch('/api/tickets/9999', json={'title': 'x'}).status_code == 404


def test_update_with_invalid_assignee(login_as, make_user, make_ticket):
    owner = make_user()
    inactive = make_user('it_staff', is_active=False)
    t = make_ticket(owner)
    c = login_as(make_user('it_staff'))

    for target in (owner.id, inactive.id, 9999):
        r = c.patch(f"/api/tickets/{t['id']}", json={'assignedToId': target, 'status': 'pending'})
        assert r.status_code == 400
        assert r.get_json()['code'] == 'INVALID_ASSIGNEE'

    # Nothing was applied
    detail = c.get(f"/api/tickets/{t['id']}").get_json()
    assert detail['status'] == 'new'
    assert detail['assignedToId'] is None


def test_assign_moves_new_ticket_in_progress(app, login_as, make_user, make_ticket, mailer):
    owner = make_user()
    staff = make_user('it_staff')
    t = make_ticket(owner)

    r = login_as(make_user('manager')).post(f"/api/tickets/{t['id']}/assign", json={'assignedToId': staff.id})
    assert r.status_code == 200
    body = r.get_json()
    assert body['assignedToId'] == staff.id
    assert body['status'] == 'in_progress'
    assert body['assignedTo']['id'] == staff.id

    assert _notifications(app, staff.id, 'ticket_assigned') == [('ticket_assigned', {'ticketId': t['id']})]
    assert len(_notifications(app, owner.id, 'ticket_assigned_creator')) == 1
    assert any('Ticket Assigned' in m['subject'] for m in mailer.to(staff.email))


def test_assign_keeps_pending_status(login_as, make_user, make_ticket):
    t = make_ticket(make_user())
    staff = make_user('it_staff')
    c = login_as(staff)
    c.patch(f"/api/tickets/{t['id']}", json={'status': 'pending'})
    r = c.post(f"/api/tickets/{t['id']}/assign", json={'assignedToId': staff.id})
    assert r.get_json()['status'] == 'pending'

    r = c.post(f"/api/tickets/{t['id']}/assign", json={'assignedToId': None})
    assert r.status_code == 200
    assert r.get_json()['assignedToId'] is None
    assert r.get_json()['status'] == 'pending'


def test_assign_permissions_and_validation(login_as, make_user, make_ticket):
    owner = make_user()
    t = make_ticket(owner)
    assert login_as(owner).post(f"/api/tickets/{t['id']}/assign", json={'assignedToId': owner.id}).status_code == 403

    c = login_as(make_user('it_staff'))
    assert c.post(f"/api/tickets/{t['id']}/assign", json={}).status_code == 400
    r = c.post(f"/api/tickets/{t['id']}/assign", json={'assignedToId': owner.id})
    assert r.get_json()['code'] == 'INVALID_ASSIGNEE'

    staff = make_user('it_staff')
    for bad in (staff.id + 0.9, float(staff.id), 'abc', '1.5', True):
        assert c.post(f"/api/tickets/{t['id']}/assign", json={'assignedToId': bad}).status_code == 400
        assert c.patch(f"/api/tickets/{t['id']}", json={'assignedToId': bad}).status_code == 400
    assert c.get(f"/api/tickets/{t['id']}").get_json()['assignedToId'] is None
    r = c.post(f"/api/tickets/{t['id']}/assign", json={'assignedToId': str(staff.id)})
    assert r.get_json()['assignedToId'] == staff.id


def test_owner_deletes_only_new_ticket(login_as, make_user, make_ticket):
    owner = make_user()
    staff = make_user('it_staff')
    first = make_ticket(owner)
    second = make_ticket(owner)
    c = login_as(owner)

    assert c.delete(f"/api/tickets/{first['id']}").status_code == 200
    assert c.get(f"/api/tickets/{first['id']}").status_code == 404

    login_as(staff).patch(f"/api/tickets/{second['id']}", json={'status': 'in_progress'})
    r = c.delete(f"/api/tickets/{second['id']}")
    assert r.status_code == 403
    assert login_as(staff).delete(f"/api/tickets/{second['id']}").status_code == 200


def test_other_end_user_cannot_delete(login_as, make_user, make_ticket):
    t = make_ticket(make_user())
    assert login_as(make_user()).delete(f"/api/tickets/{t['id']}").status_code == 403


def test_delete_cascades_comments_and_attachment_files(app, login_as, make_user, make_ticket):
    owner = make_user()
    t = make_ticket(owner)
    c = login_as(owner)
    c.post(f"/api/tickets/{t['id']}/comments", json={'content': 'more info'})
    c.post(f"/api/tickets/{t['id']}/attachments", data={
        'attachments': [(io.BytesIO(b'hello'), 'notes.txt', 'text/plain')],
    }, content_type='multipart/form-data')
    with app.app_context():
        stored = [a.file_path for a in storage.list_attachments(t['id'])]
    assert len(stored) == 1
    folder = app.config['UPLOAD_FOLDER']

    assert c.delete(f"/api/tickets/{t['id']}").status_code == 200
    with app.app_context():
        assert db.session.query(TicketComment).count() == 0
        assert db.session.query(TicketAttachment).count() == 0
    assert not os.path.exists(os.path.join(folder, stored[0]))
