import asyncio
import contextlib
import time

import pytest
from aiohttp import web

import cdn_dashboard.credentials as credentials_module
from cdn_dashboard.api_server import create_app, merge_imported_accounts, resolve_page
from cdn_dashboard.config import Settings
from cdn_dashboard.context import AppContext
from cdn_dashboard.types import (
    AccountResult,
    MetricPoint,
    Snapshot,
    ZoneResult,
    PROVIDER_CLOUDFLARE,
    PROVIDER_EDGEONE,
)

UNAUTHORIZED = {'error': 'unauthorized'}


@pytest.fixture
def web_root(settings):
    root = settings.web_root
    (root / 'admin').mkdir(parents=True)
    (root / 'index.html').write_text('<html>dashboard</html>')
    (root / 'admin' / 'index.html').write_text('<html>admin</html>')
    (root / 'admin' / 'install.html').write_text('<html>install</html>')
    (root / 'admin' / 'nodata.html').write_text('<a href="ADMIN_PATH">admin</a>')
    return root


@pytest.fixture
def adapters(make_adapter):
    return {
        PROVIDER_CLOUDFLARE: make_adapter(provider=PROVIDER_CLOUDFLARE),
        PROVIDER_EDGEONE: make_adapter(provider=PROVIDER_EDGEONE),
    }


@pytest.fixture
def context(settings, web_root, cloudflare_account):
    return AppContext(settings, accounts=[cloudflare_account])


@pytest.fixture
async def client(aiohttp_client, context, adapters):
    return await aiohttp_client(create_app(context, adapters=adapters, start_scheduler=False))


@pytest.fixture
async def admin_token(client):
    resp = await client.post('/api/install', json={
        'adminUsername': 'admin',
        'adminPassword': 'hunter22',
        'siteName': 'Edge Stats',
    })
    assert (await resp.json())['success'] is True
    resp = await client.post('/api/login', json={'username': 'admin', 'password': 'hunter22'})
    body = await resp.json()
    assert body['success'] is True
    return body['token']


def auth(token):
    return {'Authorization': f'Bearer {token}'}


def _snapshot():
    return Snapshot(accounts=[AccountResult(name='Main', zones=[
        ZoneResult('zone-a', 'a.example.com', days=[MetricPoint('2024-03-15', requests=3)]),
    ])])


async def test_analytics_before_first_cycle(client):
    resp = await client.get('/api/analytics')
    assert resp.status == 404
    assert 'error' in await resp.json()


async def test_analytics_serves_snapshot(client, context):
    context.snapshot_store.replace(_snapshot())

    resp = await client.get('/api/analytics')

    assert resp.status == 200
    body = await resp.json()
    assert body['accounts'][0]['zones'][0]['days'][0]['date'] == '2024-03-15'


async def test_status(client, context):
    resp = await client.get('/api/status')
    body = await resp.json()
    assert body['status'] == 'running'
    assert body['dataExists'] is False
    assert body['hasAccounts'] is True
    assert body['accounts'] == 1

    context.snapshot_store.replace(_snapshot())
    body = await (await client.get('/api/status')).json()
    assert body['dataExists'] is True
    assert body['hasValidData'] is True
    assert body['hasErrors'] is False
    assert body['lastUpdate']


async def test_update_runs_cycle(client, adapters):
    resp = await client.post('/api/update')
    body = await resp.json()
    assert resp.status == 200
    assert body == {'success': True, 'message': 'Data update completed', 'zones': 2, 'errors': 0}


async def test_update_conflicts_with_running_cycle(client, context, adapters, gate):
    adapters[PROVIDER_CLOUDFLARE].gate = gate
    running = asyncio.ensure_future(context.scheduler.trigger('scheduled'))
    while not adapters[PROVIDER_CLOUDFLARE].fetched:
        await asyncio.sleep(0.01)

    resp = await client.post('/api/update')
    assert resp.status == 409

    gate.set()
    assert (await running).success


async def test_install_status_and_refusal(client):
    body = await (await client.get('/api/install/status')).json()
    assert body['isInstalled'] is False

    resp = await client.post('/api/install', data={'adminUsername': 'admin', 'adminPassword': 'pw123456'})
    body = await resp.json()
    assert body['success'] is True
    assert body['adminPath'].startswith('/')

    resp = await client.post('/api/install', data={'adminUsername': 'evil', 'adminPassword': 'x'})
    assert resp.status == 409
    assert (await (await client.get('/api/install/status')).json())['isInstalled'] is True


async def test_login_before_install(client):
    body = await (await client.post('/api/login', json={'username': 'admin', 'password': 'admin123'})).json()
    assert body['success'] is False


async def test_wrong_password_creates_no_session(client, context, admin_token):
    body = await (await client.post('/api/login', json={'username': 'admin', 'password': 'wrong'})).json()
    assert body == {'success': False, 'error': 'Invalid username or password'}
    # The earlier session is untouched
    assert context.credentials.session.token == admin_token


async def test_login_missing_fields(client, admin_token):
    body = await (await client.post('/api/login', json={'username': 'admin'})).json()
    assert body['success'] is False


async def test_admin_verify(client, admin_token):
    resp = await client.get('/api/admin/verify', headers=auth(admin_token))
    assert resp.status == 200
    assert await resp.json() == {'valid': True}

    for headers in ({}, auth('forged'), {'Authorization': admin_token}):
        resp = await client.get('/api/admin/verify', headers=headers)
        assert resp.status == 401
        assert await resp.json() == UNAUTHORIZED


async def test_expired_token_rejected(client, context, admin_token):
    context.credentials.clock = lambda: time.time() + 7200

    resp = await client.get('/api/admin/verify', headers=auth(admin_token))

    assert resp.status == 401
    assert await resp.json() == UNAUTHORIZED
    assert context.credentials.session is None


async def test_refresh_token_revokes_old(client, admin_token):
    body = await (await client.post('/api/admin/refresh-token', headers=auth(admin_token))).json()
    new_token = body['token']
    assert new_token != admin_token
    assert (await client.get('/api/admin/verify', headers=auth(admin_token))).status == 401
    assert (await client.get('/api/admin/verify', headers=auth(new_token))).status == 200


async def test_reset_requires_token(client, context):
    context.snapshot_store.replace(_snapshot())

    resp = await client.post('/api/reset')

    assert resp.status == 401
    assert await resp.json() == UNAUTHORIZED
    assert context.snapshot_store.load() is not None


async def test_reset_clears_state(client, context, admin_token):
    context.snapshot_store.replace(_snapshot())

    resp = await client.post('/api/reset', headers=auth(admin_token))

    assert (await resp.json())['success'] is True
    assert context.snapshot_store.load() is None
    assert not context.config_store.exists()
    assert (await client.get('/api/admin/verify', headers=auth(admin_token))).status == 401


async def test_config_is_redacted(client, admin_token):
    body = await (await client.get('/api/config')).json()
    assert body['website']['title'] == 'Edge Stats'
    assert 'admin' not in body
    assert 'security' not in body
    assert 'session' not in body


async def test_config_post_keeps_admin(client, context, admin_token):
    resp = await client.post('/api/config', json={
        'provider': 'edgeone',
        'edgeone': {'enabled': True, 'accounts': []},
        'admin': {'username': 'takeover', 'password': 'x'},
    })
    assert (await resp.json())['success'] is True

    document = context.config_store.load()
    assert document['provider'] == 'edgeone'
    assert document['admin']['username'] == 'admin'
    assert context.credentials.authenticate('admin', 'hunter22')


async def test_config_post_rejects_non_object(client):
    resp = await client.post('/api/config', json=['a'])
    assert resp.status == 400


async def test_config_guard_when_enabled(aiohttp_client, env, web_root, adapters):
    settings = Settings(env={**env, 'CONFIG_API_REQUIRE_AUTH': 'true'})
    app = create_app(AppContext(settings, accounts=[]), adapters=adapters, start_scheduler=False)
    client = await aiohttp_client(app)

    resp = await client.get('/api/config')

    assert resp.status == 401
    assert await resp.json() == UNAUTHORIZED


async def test_validation_dispatches_by_provider(client, adapters):
    resp = await client.post('/api/validate/cloudflare', json={'token': 'abc'})
    assert (await resp.json())['valid'] is True
    assert adapters[PROVIDER_CLOUDFLARE].validated == [{'token': 'abc'}]

    await client.post('/api/validate/edgeone', json={'secretId': 'AKID1', 'secretKey': 'k'})
    assert adapters[PROVIDER_EDGEONE].validated == [{'secretId': 'AKID1', 'secretKey': 'k', 'region': None}]


async def test_website_settings(client, context, admin_token):
    resp = await client.post('/api/admin/website', headers=auth(admin_token),
                             json={'siteName': 'Renamed'})
    assert (await resp.json())['success'] is True
    assert context.config_store.load()['website']['title'] == 'Renamed'


async def test_import_csv(client, context, admin_token):
    resp = await client.post('/api/admin/import-csv', headers=auth(admin_token), json={'accounts': [
        {'name': 'Tencent', 'secretid': 'AKIDabc', 'secretkey': 'k', 'zone_id': 'zone-1', 'domain': 'a.cn'},
        {'account_name': 'CF', 'cf_token': 't1', 'zoneid': 'z1', 'domain': 'b.com'},
        {'token': 't1', 'zone_id': 'z1', 'domain': 'b.com'},
    ]})
    body = await resp.json()
    assert body['importedCount'] == 2

    document = context.config_store.load()
    assert document['edgeone']['accounts'][0]['secretId'] == 'AKIDabc'
    assert document['cloudflare']['accounts'][0]['zones'] == [{'zone_id': 'z1', 'domain': 'b.com', 'name': 'b.com'}]


async def test_import_csv_requires_token(client):
    resp = await client.post('/api/admin/import-csv', json={'accounts': []})
    assert resp.status == 401


def test_merge_imported_accounts_ignores_incomplete_rows():
    document = {}
    assert merge_imported_accounts(document, [{'secretid': 'nope', 'secretkey': 'k'}, 'row', {}]) == 0
    assert document['edgeone']['accounts'] == []


async def test_unknown_api_path(client):
    resp = await client.get('/api/nope')
    assert resp.status == 404
    assert 'error' in await resp.json()


async def test_root_redirects_to_install(client):
    resp = await client.get('/', allow_redirects=False)
    assert resp.status == 302
    assert resp.headers['Location'] == '/admin/install.html'


async def test_pages_after_install(client, context, admin_token):
    admin_path = context.credentials.admin_path()

    assert '<html>admin</html>' == await (await client.get(admin_path)).text()
    assert '<html>dashboard</html>' == await (await client.get('/')).text()
    assert '<html>dashboard</html>' == await (await client.get('/some/page')).text()


@pytest.mark.parametrize('path, installed, has_accounts, expected', [
    ('/', False, False, ('redirect', '/admin/install.html')),
    ('/anything', False, True, ('file', 'admin/install.html')),
    ('/s3cret/settings', True, True, ('file', 'admin/index.html')),
    ('/', True, False, ('file', 'admin/nodata.html')),
    ('/', True, True, ('file', 'index.html')),
])
def test_resolve_page(path, installed, has_accounts, expected):
    assert resolve_page(path, {'adminPath': '/s3cret'}, installed, has_accounts) == expected


async def test_login_keeps_event_loop_responsive(client, admin_token, monkeypatch):
    original_hash = credentials_module.hash_password

    def slow_hash(*args, **kwargs):
        time.sleep(0.3)
        return original_hash(*args, **kwargs)
    monkeypatch.setattr(credentials_module, 'hash_password', slow_hash)

    ticks = []

    async def heartbeat():
        while True:
            ticks.append(time.monotonic())
            await asyncio.sleep(0.01)

    beat = asyncio.ensure_future(heartbeat())
    try:
        resp = await client.post('/api/login', json={'username': 'admin', 'password': 'hunter22'})
        body = await resp.json()
    finally:
        beat.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await beat

    assert body['success'] is True
    gaps = [later - earlier for earlier, later in zip(ticks, ticks[1:])]
    assert len(ticks) > 10
    assert max(gaps) < 0.2


async def test_status_counts_imported_accounts(client, admin_token):
    await client.post('/api/admin/import-csv', headers=auth(admin_token), json={'accounts': [
        {'name': 'Tencent', 'secretid': 'AKIDabc', 'secretkey': 'k', 'zone_id': 'zone-1', 'domain': 'a.cn'},
        {'name': 'CF', 'token': 't1', 'zone_id': 'z1', 'domain': 'b.com'},
    ]})

    body = await (await client.get('/api/status')).json()

    assert body['hasAccounts'] is True
    assert body['accounts'] == 3


async def test_status_counts_document_accounts_without_registry(aiohttp_client, settings, web_root, adapters):
    context = AppContext(settings, accounts=[])
    context.config_store.save({'cloudflare': {'enabled': True, 'accounts': [
        {'name': 'Added', 'token': 'other', 'zones': [{'zone_id': 'zone-c', 'domain': 'c.example.com'}]},
    ]}})
    client = await aiohttp_client(create_app(context, adapters=adapters, start_scheduler=False))

    body = await (await client.get('/api/status')).json()

    assert body['hasAccounts'] is True
    assert body['accounts'] == 1


@pytest.mark.parametrize('payload', [
    {'siteName': ['Renamed']},
    {'siteName': 'Renamed', 'siteDescription': {'text': 'x'}},
])
async def test_website_settings_reject_non_strings(client, context, admin_token, payload):
    resp = await client.post('/api/admin/website', headers=auth(admin_token), json=payload)

    assert resp.status == 400
    assert (await resp.json())['success'] is False
    assert context.config_store.load()['website']['title'] == 'Edge Stats'


# edgeone.ai site statistics

@pytest.fixture
async def edgeone_ai_upstream(aiohttp_server):
    """Fake edgeone.ai API. Set ``answers[kind] = (status, body)`` per test."""
    answers = {}
    seen = []

    async def handler(request):
        kind = request.match_info['kind']
        seen.append((kind, dict(request.query), request.headers.get('Authorization')))
        status, body = answers[kind]
        return web.json_response(body, status=status)

    app = web.Application()
    app.router.add_get('/api/v1/sites/{site_id}/{kind}', handler)
    server = await aiohttp_server(app)
    return str(server.make_url('/api/v1')), answers, seen


@pytest.fixture
def make_stats_client(aiohttp_client, tmp_path, env, web_root, adapters):
    created = []

    async def factory(base_url, api_key='ai-key'):
        created.append(base_url)
        settings = Settings(env={
            **env,
            'CONFIG_PATH': str(tmp_path / f'config-{len(created)}.json'),
            'EDGEONE_AI_BASE_URL': base_url,
        })
        context = AppContext(settings, accounts=[])
        if api_key:
            context.config_store.save({'edgeone-ai': {'apiKey': api_key, 'userId': ''}})
        return await aiohttp_client(create_app(context, adapters=adapters, start_scheduler=False))
    return factory


async def test_edgeone_ai_stats(make_stats_client, edgeone_ai_upstream):
    base_url, answers, seen = edgeone_ai_upstream
    answers['stats'] = (200, {'code': 0, 'data': {'pageviews': 10, 'uniques': 4}})
    client = await make_stats_client(base_url)

    resp = await client.get('/api/edgeone-ai/stats', params={
        'siteId': 'site-1', 'startDate': '2024-03-08', 'endDate': '2024-03-15', 'unit': 'hour'
    })

    assert resp.status == 200
    body = await resp.json()
    assert body['pageviews'] == 10
    assert body['visitors'] == 4
    assert body['unit'] == 'hour'
    assert body['timezone'] == 'UTC'
    assert body['startDate'] == '2024-03-08T00:00:00.000Z'
    assert body['comparison']['pageviews'] == 10
    assert seen[0][2] == 'Bearer ai-key'
    assert seen[1][1]['startDate'] == '2024-03-01T00:00:00.000Z'


async def test_edgeone_ai_metrics(make_stats_client, edgeone_ai_upstream):
    base_url, answers, seen = edgeone_ai_upstream
    answers['metrics'] = (200, {'code': 0, 'data': {'total': 5, 'values': [{'value': 'CN', 'count': 5}]}})
    client = await make_stats_client(base_url)

    resp = await client.get('/api/edgeone-ai/metrics', params={'siteId': 'site-1', 'field': 'country'})

    assert resp.status == 200
    body = await resp.json()
    assert body['field'] == 'country'
    assert body['values'] == [{'value': 'CN', 'count': 5, 'date': None}]
    assert seen[0][1]['field'] == 'country'


@pytest.mark.parametrize('status, error', [
    (401, 'ApiKey invalid or expired'),
    (403, 'Insufficient permission'),
])
async def test_edgeone_ai_rejected_key(make_stats_client, edgeone_ai_upstream, status, error):
    base_url, answers, _ = edgeone_ai_upstream
    answers['stats'] = (status, {'message': 'denied'})
    client = await make_stats_client(base_url)

    resp = await client.get('/api/edgeone-ai/stats', params={'siteId': 'site-1'})

    assert resp.status == status
    assert await resp.json() == {'error': error}


async def test_edgeone_ai_upstream_error_message(make_stats_client, edgeone_ai_upstream):
    base_url, answers, _ = edgeone_ai_upstream
    answers['metrics'] = (200, {'code': 1001, 'message': 'site not found'})
    client = await make_stats_client(base_url)

    resp = await client.get('/api/edgeone-ai/metrics', params={'siteId': 'site-1'})

    assert resp.status == 400
    assert await resp.json() == {'error': 'site not found'}


async def test_edgeone_ai_unreachable(make_stats_client):
    client = await make_stats_client('http://127.0.0.1:1/api/v1')

    resp = await client.get('/api/edgeone-ai/stats', params={'siteId': 'site-1'})

    assert resp.status == 503
    assert 'error' in await resp.json()


async def test_edgeone_ai_request_checks(make_stats_client, edgeone_ai_upstream):
    base_url, _, seen = edgeone_ai_upstream
    client = await make_stats_client(base_url)

    assert (await client.get('/api/edgeone-ai/stats')).status == 400
    resp = await client.get('/api/edgeone-ai/stats', params={'siteId': 'site-1', 'startDate': 'yesterday'})
    assert resp.status == 400

    unconfigured = await make_stats_client(base_url, api_key=None)
    resp = await unconfigured.get('/api/edgeone-ai/metrics', params={'siteId': 'site-1'})
    assert resp.status == 401
    assert 'not configured' in (await resp.json())['error']
    assert seen == []
