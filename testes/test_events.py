from notifications import hub


def test_event_stream_requires_login(client):
    assert client.get('/api/events').status_code == 401


def test_event_stream_over_http(login_as, make_user):
    user = make_user('it_staff')
    c = login_as(user)

    resp = c.get('/api/events', buffered=False)
    assert resp.status_code == 200
    assert resp.mimetype == 'text/event-stream'
    assert resp.headers['Cache-Control'] == 'no-cache'

    chunks = iter(resp.response)
    assert b'retry: 5000' in next(chunks)
    hello = next(chunks)
    assert b'event: connected' in hello
    assert b'"pollInterval": 30' in hello
    assert hub.subscriber_count(user.id) == 1

    # Staff streams receive ticket events for everyone's tickets
    hub.publish('ticket_created', {'ticketId': 1}, user_ids=[999], staff=True)
    assert b'event: ticket_created' in next(chunks)

    resp.close()
    assert hub.subscriber_count(user.id) == 0
