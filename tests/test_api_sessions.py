import uuid
from datetime import timedelta

from readalong.schemas import SessionStatus
from readalong.services.cache import session_key
from tests.utils import create_reading_session, token_for


def create(test_client, host_id, **body):
    body.setdefault('title', 'The Hobbit, chapter 3')
    body.setdefault('max_participants', 3)
    response = test_client.post('/api/sessions', params={'token': token_for(host_id)}, json=body)
    assert response.status_code == 201, response.text
    return response.json()


def test_requires_token(test_client):
    assert test_client.get('/api/sessions').status_code == 401
    assert test_client.get('/api/sessions', params={'token': 'garbage'}).status_code == 401

    expired = token_for(uuid.uuid4(), expires_in=timedelta(seconds=-5))
    assert test_client.get('/api/sessions', params={'token': expired}).status_code == 401


def test_create_session(test_client):
    host_id = uuid.uuid4()

    data = create(test_client, host_id, description='Riddles in the dark')

    assert data['host_id'] == str(host_id)
    assert data['status'] == 'ACTIVE'
    assert data['participant_count'] == 1
    assert data['max_participants'] == 3


def test_create_session_validates_capacity(test_client):
    response = test_client.post(
        '/api/sessions',
        params={'token': token_for(uuid.uuid4())},
        json={'title': 'Too big', 'max_participants': 500},
    )
    assert response.status_code == 422


def test_join_and_leave(test_client):
    session = create(test_client, uuid.uuid4())
    reader = uuid.uuid4()
    token = token_for(reader)

    joined = test_client.post(f'/api/sessions/{session["id"]}/join', params={'token': token})
    assert joined.status_code == 200
    assert joined.json()['outcome'] == 'success'
    assert joined.json()['participant_count'] == 2
    assert joined.json()['changed'] is True

    again = test_client.post(f'/api/sessions/{session["id"]}/join', params={'token': token})
    assert again.json()['changed'] is False
    assert again.json()['participant_count'] == 2

    left = test_client.post(f'/api/sessions/{session["id"]}/leave', params={'token': token})
    assert left.json()['outcome'] == 'success'
    assert left.json()['participant_count'] == 1


def test_join_full_session(test_client):
    session = create(test_client, uuid.uuid4(), max_participants=2)
    test_client.post(f'/api/sessions/{session["id"]}/join', params={'token': token_for(uuid.uuid4())})

    response = test_client.post(f'/api/sessions/{session["id"]}/join', params={'token': token_for(uuid.uuid4())})

    assert response.status_code == 409
    assert response.json()['outcome'] == 'error'
    assert response.json()['error'] == 'capacity_exceeded'


def test_join_unknown_session(test_client):
    response = test_client.post(f'/api/sessions/{uuid.uuid4()}/join', params={'token': token_for(uuid.uuid4())})

    assert response.status_code == 404
    assert response.json()['error'] == 'session_not_found'


def test_join_ended_session(test_client, db_session):
    reading_session = create_reading_session(db_session, status=SessionStatus.ENDED)

    response = test_client.post(f'/api/sessions/{reading_session.id}/join', params={'token': token_for(uuid.uuid4())})

    assert response.status_code == 409
    assert response.json()['error'] == 'session_not_joinable'


def test_detail_is_cached_and_invalidated_on_join(test_client, redis_client):
    host_id = uuid.uuid4()
    session = create(test_client, host_id)
    token = token_for(host_id)

    detail = test_client.get(f'/api/sessions/{session["id"]}', params={'token': token}).json()
    assert len(detail['participants']) == 1
    assert redis_client.exists(session_key(uuid.UUID(session['id'])))

    test_client.post(f'/api/sessions/{session["id"]}/join', params={'token': token_for(uuid.uuid4())})
    assert not redis_client.exists(session_key(uuid.UUID(session['id'])))

    detail = test_client.get(f'/api/sessions/{session["id"]}', params={'token': token}).json()
    assert detail['participant_count'] == 2
    assert len(detail['participants']) == 2


def test_detail_not_found(test_client):
    response = test_client.get(f'/api/sessions/{uuid.uuid4()}', params={'token': token_for(uuid.uuid4())})
    assert response.status_code == 404


def test_list_hides_finished_sessions(test_client):
    host_id = uuid.uuid4()
    token = token_for(host_id)
    live = create(test_client, host_id, title='Live')
    finished = create(test_client, host_id, title='Finished')
    test_client.delete(f'/api/sessions/{finished["id"]}', params={'token': token})

    listed = test_client.get('/api/sessions', params={'token': token}).json()
    assert [s['id'] for s in listed['sessions']] == [live['id']]
    assert listed['total'] == 1
    assert listed['has_more'] is False

    everything = test_client.get('/api/sessions', params={'token': token, 'include_ended': True}).json()
    assert everything['total'] == 2

    ended = test_client.get('/api/sessions', params={'token': token, 'status': 'ENDED'}).json()
    assert [s['id'] for s in ended['sessions']] == [finished['id']]


def test_list_pagination(test_client):
    host_id = uuid.uuid4()
    for i in range(3):
        create(test_client, host_id, title=f'Session {i}')

    page = test_client.get('/api/sessions', params={'token': token_for(host_id), 'limit': 2}).json()

    assert len(page['sessions']) == 2
    assert page['total'] == 3
    assert page['has_more'] is True


def test_my_sessions(test_client):
    reader = uuid.uuid4()
    session = create(test_client, uuid.uuid4())
    create(test_client, uuid.uuid4())
    test_client.post(f'/api/sessions/{session["id"]}/join', params={'token': token_for(reader)})

    mine = test_client.get('/api/sessions/mine', params={'token': token_for(reader)}).json()
    assert [s['id'] for s in mine] == [session['id']]

    test_client.post(f'/api/sessions/{session["id"]}/leave', params={'token': token_for(reader)})
    assert test_client.get('/api/sessions/mine', params={'token': token_for(reader)}).json() == []


def test_pause_and_resume(test_client):
    host_id = uuid.uuid4()
    session = create(test_client, host_id)
    token = token_for(host_id)

    paused = test_client.patch(f'/api/sessions/{session["id"]}', params={'token': token}, json={'status': 'PAUSED'})
    assert paused.status_code == 200
    assert paused.json()['status'] == 'PAUSED'

    resumed = test_client.patch(f'/api/sessions/{session["id"]}', params={'token': token}, json={'status': 'ACTIVE'})
    assert resumed.json()['status'] == 'ACTIVE'


def test_only_host_changes_status(test_client):
    session = create(test_client, uuid.uuid4())

    response = test_client.patch(
        f'/api/sessions/{session["id"]}',
        params={'token': token_for(uuid.uuid4())},
        json={'status': 'PAUSED'},
    )
    assert response.status_code == 403

    response = test_client.delete(f'/api/sessions/{session["id"]}', params={'token': token_for(uuid.uuid4())})
    assert response.status_code == 403


def test_end_session_releases_participants(test_client):
    host_id = uuid.uuid4()
    session = create(test_client, host_id)
    test_client.post(f'/api/sessions/{session["id"]}/join', params={'token': token_for(uuid.uuid4())})

    ended = test_client.delete(f'/api/sessions/{session["id"]}', params={'token': token_for(host_id)})
    assert ended.status_code == 200
    assert ended.json()['status'] == 'ENDED'
    assert ended.json()['participant_count'] == 0
    assert ended.json()['peak_participants'] == 2

    participants = test_client.get(f'/api/sessions/{session["id"]}/participants', params={'token': token_for(host_id)})
    assert participants.json() == []

    reopen = test_client.patch(
        f'/api/sessions/{session["id"]}',
        params={'token': token_for(host_id)},
        json={'status': 'ACTIVE'},
    )
    assert reopen.status_code == 400


def test_participants_in_join_order(test_client):
    host_id = uuid.uuid4()
    session = create(test_client, host_id)
    reader = uuid.uuid4()
    test_client.post(f'/api/sessions/{session["id"]}/join', params={'token': token_for(reader)})

    participants = test_client.get(f'/api/sessions/{session["id"]}/participants', params={'token': token_for(host_id)}).json()

    assert [p['participant_id'] for p in participants] == [str(host_id), str(reader)]
    assert participants[0]['role'] == 'HOST'
    assert participants[1]['role'] == 'MEMBER'


def test_ending_clears_every_members_own_list(test_client):
    host_id = uuid.uuid4()
    reader = uuid.uuid4()
    session = create(test_client, host_id)
    test_client.post(f'/api/sessions/{session["id"]}/join', params={'token': token_for(reader)})

    before = test_client.get('/api/sessions/mine', params={'token': token_for(reader)}).json()
    assert [s['status'] for s in before] == ['ACTIVE']

    test_client.delete(f'/api/sessions/{session["id"]}', params={'token': token_for(host_id)})

    after = test_client.get('/api/sessions/mine', params={'token': token_for(reader)}).json()
    assert after == []


def test_pause_is_visible_in_members_own_list(test_client):
    host_id = uuid.uuid4()
    reader = uuid.uuid4()
    session = create(test_client, host_id)
    test_client.post(f'/api/sessions/{session["id"]}/join', params={'token': token_for(reader)})
    test_client.get('/api/sessions/mine', params={'token': token_for(reader)})

    test_client.patch(f'/api/sessions/{session["id"]}', params={'token': token_for(host_id)}, json={'status': 'PAUSED'})

    mine = test_client.get('/api/sessions/mine', params={'token': token_for(reader)}).json()
    assert [s['status'] for s in mine] == ['PAUSED']


def test_join_committed_during_a_detail_read_is_not_cached_stale(test_client, api_app, session_cache, monkeypatch):
    host_id = uuid.uuid4()
    session = create(test_client, host_id)
    session_id = uuid.UUID(session['id'])
    token = token_for(host_id)
    write_back = session_cache.set_json_if_current

    def join_then_write(key, value, generation):
        # another request's join commits and invalidates after this request read storage
        api_app.state.coordinator.join(session_id, uuid.uuid4())
        return write_back(key, value, generation)

    monkeypatch.setattr(session_cache, 'set_json_if_current', join_then_write)
    first = test_client.get(f'/api/sessions/{session_id}', params={'token': token}).json()
    monkeypatch.setattr(session_cache, 'set_json_if_current', write_back)

    assert first['participant_count'] == 1
    assert session_cache.get_json(session_key(session_id)) is None

    second = test_client.get(f'/api/sessions/{session_id}', params={'token': token}).json()
    assert second['participant_count'] == 2


def test_private_session_hidden_from_other_users_list(test_client):
    host_id = uuid.uuid4()
    stranger = uuid.uuid4()
    private = create(test_client, host_id, title='Book club', is_public=False)
    public = create(test_client, host_id, title='Open reading')

    theirs = test_client.get('/api/sessions', params={'token': token_for(stranger)}).json()
    assert [s['id'] for s in theirs['sessions']] == [public['id']]

    own = test_client.get('/api/sessions', params={'token': token_for(host_id)}).json()
    assert {s['id'] for s in own['sessions']} == {public['id'], private['id']}
    assert own['total'] == 2


def test_private_session_detail_requires_access(test_client):
    host_id = uuid.uuid4()
    member = uuid.uuid4()
    session = create(test_client, host_id, is_public=False)
    assert session['is_public'] is False
    test_client.post(f'/api/sessions/{session["id"]}/join', params={'token': token_for(member)})

    for viewer in (host_id, member):
        response = test_client.get(f'/api/sessions/{session["id"]}', params={'token': token_for(viewer)})
        assert response.status_code == 200

    # served from the cache this time; the check still applies
    stranger = test_client.get(f'/api/sessions/{session["id"]}', params={'token': token_for(uuid.uuid4())})
    assert stranger.status_code == 403

    participants = test_client.get(
        f'/api/sessions/{session["id"]}/participants',
        params={'token': token_for(uuid.uuid4())},
    )
    assert participants.status_code == 403
