import json
from datetime import timedelta

from crash_aim import db
from crash_aim.api.rounds import store_result
from crash_aim.models import Round, RoundResult, Score, utcnow
from crash_aim.services.presence import verify_channel_auth
from crash_aim.services.rounds.generator import now_ms
from crash_aim.services.rounds.params import RoundParameters, StopResult
from crash_aim.services.rounds.signing import sign, verify

ROUND_SECRET = 'round-test-secret'


def _signed_round(start_offset_ms=-1000, seed=3141592653589, room='alpha', target=2.13):
    params = RoundParameters(
        room=room,
        start_at=now_ms() + start_offset_ms,
        max_time_ms=8000,
        max_multiplier=4.5,
        target=target,
        seed=seed,
    )
    return params.with_signature(sign(params, ROUND_SECRET))


def _result_body(params, user_id='uid-amy', name='amy', value=2.10, crashed=False, timestamp=None):
    return {
        'room': params.room,
        'round': params.to_payload(),
        'result': {
            'userId': user_id,
            'name': name,
            'value': value,
            'crashed': crashed,
            'timestamp': timestamp if timestamp is not None else now_ms(),
        },
    }


def test_index(client):
    res = client.get('/')
    assert res.status_code == 200
    assert 'Crash Aim' in res.get_json()['message']


def test_round_sign(client, flask_app):
    payload = {
        'room': 'Alpha', 'startAt': now_ms() + 3000, 'maxTimeMs': 8000,
        'maxMultiplier': 4.5, 'target': 2.13, 'seed': 2718281828459,
    }
    res = client.post('/api/round-sign', json=payload)
    assert res.status_code == 200
    data = res.get_json()
    assert data['ok'] is True
    assert data['roundId'] == '2718281828459'
    params = RoundParameters.from_payload(payload)
    assert verify(params, data['signature'], ROUND_SECRET)
    with flask_app.app_context():
        stored = db.session.get(Round, '2718281828459')
        assert stored.room == 'alpha'
        assert stored.status == 'running'


def test_round_sign_rejects_bad_requests(client):
    base = {'room': 'alpha', 'startAt': now_ms() + 3000, 'maxTimeMs': 8000,
            'maxMultiplier': 4.5, 'target': 2.13, 'seed': 1}
    assert client.post('/api/round-sign', json=dict(base, startAt=now_ms() - 10)).status_code == 400
    assert client.post('/api/round-sign', json=dict(base, maxTimeMs=120000)).status_code == 400
    assert client.post('/api/round-sign', json=dict(base, target=4.5)).status_code == 400
    res = client.post('/api/round-sign', json={'room': 'alpha'})
    assert res.status_code == 400
    assert res.get_json()['ok'] is False


def test_round_sign_refuses_reused_seed(client):
    base = {'room': 'alpha', 'startAt': now_ms() + 3000, 'maxTimeMs': 8000,
            'maxMultiplier': 4.5, 'target': 2.13, 'seed': 77}
    assert client.post('/api/round-sign', json=base).status_code == 200
    assert client.post('/api/round-sign', json=base).status_code == 200
    res = client.post('/api/round-sign', json=dict(base, target=2.5))
    assert res.status_code == 409


def test_round_sign_without_secret(client, flask_app):
    flask_app.config['ROUND_SECRET'] = None
    res = client.post('/api/round-sign', json={'room': 'alpha'})
    assert res.status_code == 500
    assert res.get_json() == {'ok': False, 'error': 'Round signing secret is not configured'}


def test_round_result_accepts_signed_result(client, flask_app):
    params = _signed_round()
    res = client.post('/api/round-result', json=_result_body(params))
    assert res.status_code == 200
    data = res.get_json()
    assert data['ok'] is True
    assert data['result']['score'] == 970
    assert data['result']['diff'] == 0.03

    # Resubmission replaces the earlier stop
    res = client.post('/api/round-result', json=_result_body(params, value=2.13))
    assert res.status_code == 200
    with flask_app.app_context():
        rows = RoundResult.query.filter_by(round_id=params.round_id).all()
        assert len(rows) == 1
        assert rows[0].score == 1000


def test_round_result_recomputes_score(client):
    params = _signed_round()
    body = _result_body(params, value=2.5)
    body['result']['score'] = 1000
    body['result']['diff'] = 0
    data = client.post('/api/round-result', json=body).get_json()
    assert data['result']['score'] == 630


def test_round_result_crash_lands_on_ceiling(client):
    params = _signed_round(start_offset_ms=-8500)
    data = client.post('/api/round-result', json=_result_body(params, value=1.7, crashed=True)).get_json()
    assert data['result']['value'] == 4.5
    assert data['result']['score'] == 0


def test_round_result_rejects_bad_signature(client):
    params = _signed_round()
    body = _result_body(params)
    body['round']['target'] = 2.10
    res = client.post('/api/round-result', json=body)
    assert res.status_code == 403
    assert res.get_json()['error'] == 'Invalid signature'

    body = _result_body(params)
    body['round'].pop('signature')
    assert client.post('/api/round-result', json=body).status_code == 403


def test_round_result_rejects_non_ascii_signature(client):
    params = _signed_round()
    body = _result_body(params)
    body['round']['signature'] = 'é' * 64
    res = client.post('/api/round-result', json=body)
    assert res.status_code == 403
    assert res.get_json() == {'ok': False, 'error': 'Invalid signature'}


def test_round_result_rejects_late_and_early_stops(client):
    params = _signed_round()
    late = _result_body(params, timestamp=params.end_at + 3000)
    assert client.post('/api/round-result', json=late).status_code == 403
    early = _result_body(params, timestamp=params.start_at - 3000)
    assert client.post('/api/round-result', json=early).status_code == 403

    not_started = _signed_round(start_offset_ms=5000, seed=1618033988749)
    body = _result_body(not_started, timestamp=not_started.start_at + 100)
    res = client.post('/api/round-result', json=body)
    assert res.status_code == 403
    assert 'before the round started' in res.get_json()['error']


def test_round_result_rejects_bad_payloads(client):
    params = _signed_round()
    assert client.post('/api/round-result', json={}).status_code == 400
    body = _result_body(params)
    body['room'] = 'beta'
    assert client.post('/api/round-result', json=body).status_code == 400
    body = _result_body(params, value=9.0)
    assert client.post('/api/round-result', json=body).status_code == 400
    body = _result_body(params)
    del body['result']['userId']
    assert client.post('/api/round-result', json=body).status_code == 400


def test_round_result_without_secret(client, flask_app):
    flask_app.config['ROUND_SECRET'] = ''
    res = client.post('/api/round-result', json=_result_body(_signed_round()))
    assert res.status_code == 500


def test_round_result_reads_crashed_strings(client):
    params = _signed_round()
    data = client.post('/api/round-result', json=_result_body(params, crashed='false')).get_json()
    assert data['result']['crashed'] is False
    assert data['result']['value'] == 2.1

    data = client.post('/api/round-result', json=_result_body(params, crashed='true')).get_json()
    assert data['result']['crashed'] is True
    assert data['result']['value'] == 4.5

    res = client.post('/api/round-result', json=_result_body(params, crashed='yes'))
    assert res.status_code == 400


class _FirstLookupMisses:
    """Hides an existing row from the first lookup, like a submission racing another."""

    class _Empty:
        def first(self):
            return None

    def __init__(self, query):
        self.query = query
        self.calls = 0

    def filter_by(self, **kwargs):
        self.calls += 1
        if self.calls == 1:
            return self._Empty()
        return self.query.filter_by(**kwargs)


def test_store_result_updates_row_inserted_concurrently(client, flask_app, monkeypatch):
    params = _signed_round()
    assert client.post('/api/round-result', json=_result_body(params, value=2.10)).status_code == 200

    with flask_app.app_context():
        lookups = _FirstLookupMisses(RoundResult.query)
        monkeypatch.setattr(RoundResult, 'query', lookups)
        result = StopResult.build('uid-amy', 'amy', 2.0, params, timestamp=now_ms())
        row = store_result(params, 'alpha', result)
        monkeypatch.undo()

        assert lookups.calls == 2
        assert row.value == 2.0
        rows = RoundResult.query.filter_by(round_id=params.round_id).all()
        assert [(r.user_id, r.value, r.score) for r in rows] == [('uid-amy', 2.0, result.score)]


def test_round_start(client, flask_app):
    before = now_ms()
    res = client.post('/api/round-start', json={'room': 'Alpha', 'startDelayMs': 2000})
    assert res.status_code == 200
    data = res.get_json()
    assert data['ok'] is True
    assert data['room'] == 'alpha'
    assert 2000 <= data['startAt'] - before <= 2000 + 5000
    assert 1.0 < data['target'] < data['maxMultiplier']
    params = RoundParameters.from_payload(data)
    assert verify(params, data['signature'], ROUND_SECRET)
    with flask_app.app_context():
        assert db.session.get(Round, data['roundId']) is not None


def test_round_start_requires_room(client):
    assert client.post('/api/round-start', json={}).status_code == 400
    assert client.post('/api/round-start', json={'room': 'a', 'startDelayMs': 'soon'}).status_code == 400


def test_round_summary(client, flask_app):
    assert client.post('/api/round-summary', json={'room': 'alpha'}).status_code == 400
    res = client.post('/api/round-summary', json={'room': 'alpha', 'roundId': '404'})
    assert res.status_code == 404

    params = _signed_round()
    client.post('/api/round-result', json=_result_body(params, 'uid-bob', 'bob', value=2.5))
    client.post('/api/round-result', json=_result_body(params, 'uid-amy', 'amy', value=2.10))
    res = client.post('/api/round-summary', json={
        'room': 'alpha', 'roundId': params.round_id, 'expectedPlayers': ['uid-amy', 'uid-bob'],
    })
    assert res.status_code == 200
    summary = res.get_json()['summary']
    assert summary['roundId'] == params.round_id
    assert summary['target'] == 2.13
    assert summary['expectedPlayers'] == ['uid-amy', 'uid-bob']
    assert [r['name'] for r in summary['results']] == ['amy', 'bob']
    with flask_app.app_context():
        assert db.session.get(Round, params.round_id).status == 'finished'


def _submit(client, **fields):
    payload = {'userId': 'u1', 'name': 'amy', 'score': 500, 'value': 2.0, 'target': 2.5,
               'diff': 0.5, 'crashed': False}
    payload.update(fields)
    return client.post('/api/score-submit', json=payload)


def test_score_submit_and_top(client):
    assert _submit(client).get_json() == {'ok': True}
    _submit(client, userId='u2', name='bob', score=900, room='Alpha', roundId='r1')
    _submit(client, userId='u3', name='carl', score=700, room='beta')

    items = client.get('/api/score-top').get_json()['items']
    assert [i['score'] for i in items] == [900, 700, 500]
    assert items[0]['room'] == 'alpha'
    assert items[0]['round_id'] == 'r1'

    items = client.get('/api/score-top?room=alpha').get_json()['items']
    assert [i['name'] for i in items] == ['bob']
    items = client.get('/api/score-top?onlyMp=1').get_json()['items']
    assert [i['name'] for i in items] == ['bob', 'carl']
    items = client.get('/api/score-top?limit=1').get_json()['items']
    assert len(items) == 1
    items = client.get('/api/score-top?limit=0').get_json()['items']
    assert len(items) == 1


def test_score_submit_sanitizes(client):
    _submit(client, name='  ' + 'x' * 50, score=-20, diff=-0.3)
    item = client.get('/api/score-top').get_json()['items'][0]
    assert len(item['name']) == 32
    assert item['score'] == 0
    assert item['diff'] == 0.3


def test_score_submit_requires_user(client):
    res = _submit(client, userId='')
    assert res.status_code == 400
    assert _submit(client, score='lots').status_code == 400


def test_score_submit_rejects_non_finite_numbers(client):
    for raw in ('{"userId": "u1", "score": NaN}',
                '{"userId": "u1", "value": Infinity}',
                '{"userId": "u1", "diff": -Infinity}'):
        res = client.post('/api/score-submit', data=raw, content_type='application/json')
        assert res.status_code == 400
        assert 'must be finite' in res.get_json()['error']
    assert client.get('/api/score-top?scope=all').get_json()['items'] == []


def test_score_submit_caps_score(client):
    _submit(client, score=10 ** 30, crashed='false')
    item = client.get('/api/score-top').get_json()['items'][0]
    assert item['score'] == 1000
    assert item['crashed'] is False


def test_score_top_scope(client, flask_app):
    _submit(client, score=100)
    with flask_app.app_context():
        db.session.add(Score(user_id='old', name='old', score=999, value=2.0, target=2.0, diff=0.0,
                             created_at=utcnow() - timedelta(days=10)))
        db.session.commit()
    day = client.get('/api/score-top?scope=day').get_json()['items']
    assert [i['user_id'] for i in day] == ['u1']
    month = client.get('/api/score-top?scope=month').get_json()['items']
    assert [i['user_id'] for i in month] == ['old', 'u1']
    everything = client.get('/api/score-top?scope=all').get_json()['items']
    assert len(everything) == 2


def test_realtime_auth_presence(client, flask_app):
    res = client.post('/api/realtime/auth', json={
        'socket_id': '123.456', 'channel_name': 'presence-alpha', 'username': 'amy', 'user_id': 'uid-amy',
    })
    assert res.status_code == 200
    data = res.get_json()
    assert data['auth'].startswith('test-key:')
    assert json.loads(data['channel_data']) == {'user_id': 'uid-amy', 'user_info': {'name': 'amy'}}
    assert verify_channel_auth('test-key', 'realtime-test-secret', '123.456', 'presence-alpha',
                               data['auth'], data['channel_data'])
    assert not verify_channel_auth('test-key', 'realtime-test-secret', '999.1', 'presence-alpha',
                                   data['auth'], data['channel_data'])


def test_realtime_auth_private_form_and_headers(client):
    res = client.post(
        '/api/realtime/auth',
        data={'socket_id': '1.2', 'channel_name': 'private-room-alpha-control'},
        headers={'X-Username': 'amy', 'X-User-Id': 'uid-amy'},
    )
    assert res.status_code == 200
    data = res.get_json()
    assert 'channel_data' not in data
    assert verify_channel_auth('test-key', 'realtime-test-secret', '1.2', 'private-room-alpha-control',
                               data['auth'])


def test_realtime_auth_anonymous_member(client):
    data = client.post('/api/realtime/auth', json={
        'socket_id': '1.2', 'channel_name': 'presence-alpha',
    }).get_json()
    member = json.loads(data['channel_data'])
    assert member['user_id'].startswith('anon_')
    assert member['user_info']['name'] == 'Player'


def test_realtime_auth_errors(client, flask_app):
    assert client.open('/api/realtime/auth', method='OPTIONS').status_code == 204
    assert client.post('/api/realtime/auth', json={'channel_name': 'presence-alpha'}).status_code == 400
    assert client.post('/api/realtime/auth', json={'socket_id': '1.2', 'channel_name': 'lobby'}).status_code == 400
    flask_app.config['REALTIME_SECRET'] = None
    res = client.post('/api/realtime/auth', json={'socket_id': '1.2', 'channel_name': 'presence-alpha'})
    assert res.status_code == 500


def test_endpoints_reject_non_object_json(client):
    for path in ('/api/round-sign', '/api/round-result', '/api/round-start',
                 '/api/round-summary', '/api/score-submit', '/api/realtime/auth'):
        for body in ([1, 2], 'text', 3):
            res = client.post(path, json=body)
            assert res.status_code == 400, path
            assert res.get_json() == {'ok': False, 'error': 'JSON object body required'}


def test_debug_env(client, flask_app):
    data = client.get('/api/debug-env').get_json()
    assert data['round']['secret'] == 'SET'
    assert data['realtime']['secret'] == 'SET'
    assert data['realtime']['key'] == 'tes…key'
    assert data['database'] == 'sqlite'
    flask_app.config['ROUND_SECRET'] = None
    assert client.get('/api/debug-env').get_json()['round']['secret'] == 'MISSING'


def test_sign_round_command(flask_app):
    runner = flask_app.test_cli_runner()
    result = runner.invoke(args=['sign-round', 'Alpha', '--delay-ms', '2000'])
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    params = RoundParameters.from_payload(payload)
    assert params.room == 'alpha'
    assert verify(params, payload['signature'], ROUND_SECRET)
