"""Tests for the Flask HTTP endpoints and server helpers."""

import threading
from unittest import mock

import pytest

from claude_remote.auth import Authenticator
from claude_remote.engine import RemoteEngine
from claude_remote.notifier import Notifier
from claude_remote.server import client_address, create_app, maintenance_loop, request_credential
from tests.conftest import FakeSource


def build_app(config, source=None):
    auth = Authenticator(config)
    notifier = Notifier(config, background=False)
    engine = RemoteEngine(config, is_authorized=auth.is_authorized, notifier=notifier,
                          source=source or FakeSource())
    app = create_app(config, engine=engine, notifier=notifier, auth=auth)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def app(config):
    return build_app(config)


@pytest.fixture
def client(app):
    return app.test_client()


class TestHealth:
    def test_public_health(self, client):
        resp = client.get('/health')
        assert resp.status_code == 200
        assert resp.get_json()['status'] == 'ok'

    def test_detailed_health_requires_auth(self, client):
        assert client.get('/api/health').status_code == 401

        resp = client.get('/api/health', headers={'X-Auth-Token': 'secret-token'})
        body = resp.get_json()
        assert resp.status_code == 200
        assert body['clients'] == 0
        assert body['pty']['running'] is False
        assert body['notifications'] == {'sent': 0, 'debounced': 0, 'failed': 0}


class TestState:
    def test_unauthorized(self, client):
        resp = client.get('/api/state')
        assert resp.status_code == 401
        assert resp.get_json() == {'error': 'Unauthorized'}

    def test_token_query_param(self, client):
        resp = client.get('/api/state?token=secret-token')
        body = resp.get_json()
        assert resp.status_code == 200
        assert body['pty']['running'] is False
        assert body['buffer'] == ''
        assert body['lastTrigger'] is None
        assert body['config'] == {'mockMode': False, 'domain': 'localhost'}

    def test_reflects_running_session(self, config):
        source = FakeSource()
        app = build_app(config, source)
        engine = app.extensions['claude_remote']['engine']
        engine.start_claude()
        source.emit("Proceed? (y/n) ")

        body = app.test_client().get('/api/state', headers={'X-Auth-Token': 'secret-token'}).get_json()
        assert body['pty']['running'] is True
        assert body['buffer'] == "Proceed? (y/n) "
        assert body['lastTrigger']['type'] == 'options'

    def test_auth_method_none(self, config):
        config['auth']['method'] = 'none'
        assert build_app(config).test_client().get('/api/state').status_code == 200


class TestLogin:
    @pytest.fixture
    def password_config(self, config):
        config['auth'].update({'method': 'password', 'username': 'admin', 'password': 'hunter2'})
        return config

    def test_login_sets_session_cookie(self, password_config):
        client = build_app(password_config).test_client()

        assert client.get('/api/auth-check').status_code == 401

        resp = client.post('/api/login', json={'username': 'admin', 'password': 'hunter2'})
        assert resp.status_code == 200
        assert 'session=' in resp.headers['Set-Cookie']
        assert 'HttpOnly' in resp.headers['Set-Cookie']

        check = client.get('/api/auth-check')
        assert check.status_code == 200
        assert check.get_json() == {'authenticated': True}

        client.post('/api/logout')
        assert client.get('/api/auth-check').status_code == 401

    def test_bad_password(self, password_config):
        client = build_app(password_config).test_client()
        resp = client.post('/api/login', json={'username': 'admin', 'password': 'wrong'})
        assert resp.status_code == 401
        assert 'Set-Cookie' not in resp.headers

    def test_login_without_configured_password(self, client):
        resp = client.post('/api/login', json={'username': 'admin', 'password': ''})
        assert resp.status_code == 401

    def test_static_token_rejected_for_password_method(self, password_config):
        password_config['auth']['token'] = 'secret-token'
        client = build_app(password_config).test_client()
        assert client.get('/api/state?token=secret-token').status_code == 401


def test_test_notify_without_backends(client):
    resp = client.post('/api/test-notify', headers={'X-Auth-Token': 'secret-token'})
    assert resp.get_json() == {'success': False, 'reason': 'no_topic'}


class TestRequestHelpers:
    def test_forwarded_for_behind_proxy(self, app, config):
        with app.test_request_context('/', headers={'X-Forwarded-For': '203.0.113.5, 10.0.0.1'},
                                      environ_base={'REMOTE_ADDR': '10.0.0.1'}):
            assert client_address(config) == '203.0.113.5'
            config['server']['trust_proxy'] = False
            assert client_address(config) == '10.0.0.1'

    def test_credential_sources(self, app):
        with app.test_request_context('/?token=abc'):
            assert request_credential() == 'abc'
        with app.test_request_context('/', headers={'X-Auth-Token': 'def'}):
            assert request_credential() == 'def'
        with app.test_request_context('/'):
            assert request_credential() is None


def test_maintenance_loop_sweeps_until_stopped():
    engine = mock.Mock()
    auth = mock.Mock()
    auth.cleanup.return_value = 1
    swept = threading.Event()
    engine.hub.sweep.side_effect = swept.set
    stop = threading.Event()

    thread = threading.Thread(target=maintenance_loop, args=(engine, auth, 0.01, stop), daemon=True)
    thread.start()
    assert swept.wait(5)
    stop.set()
    thread.join(5)

    assert not thread.is_alive()
    assert auth.cleanup.called
