"""
HTTP API served to the dashboard and the admin UI.

Read endpoints are open. Admin endpoints need the bearer token issued by
/api/login. Every failure of that check is answered with the same 401 body,
whether the token was missing, unknown or expired.
"""
import asyncio
import contextlib
import functools
import logging
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from aiohttp import web

from .config import merge_accounts
from .context import AppContext
from .edgeone_ai_client import DEFAULT_RANGE, PROVIDER_EDGEONE_AI, EdgeOneAIClient, parse_moment
from .errors import (
    InstallError,
    PersistenceError,
    ProviderAuthError,
    ProviderResponseError,
    ProviderTransientError,
)
from .storage import DEFAULT_WEBSITE, redact
from .types import SessionState, PROVIDER_CLOUDFLARE, PROVIDER_EDGEONE

logger = logging.getLogger(__name__)

CONTEXT_KEY = web.AppKey('context', AppContext)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

UNAUTHORIZED = {'error': 'unauthorized'}


def _context(request: web.Request) -> AppContext:
    return request.app[CONTEXT_KEY]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _json_body(request: web.Request) -> Dict:
    try:
        body = await request.json()
    except ValueError:
        raise web.HTTPBadRequest(
            text='{"success": false, "error": "Request body must be JSON"}',
            content_type='application/json'
        )
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text='{"success": false, "error": "Request body must be a JSON object"}',
            content_type='application/json'
        )
    return body


def bearer_token(request: web.Request) -> Optional[str]:
    header = request.headers.get('Authorization', '')
    if not header.startswith('Bearer '):
        return None
    return header[len('Bearer '):].strip() or None


def require_admin(handler: Handler) -> Handler:
    """Reject the request with 401 unless it carries the active session token."""
    @functools.wraps(handler)
    async def wrapper(request: web.Request) -> web.StreamResponse:
        state = _context(request).credentials.validate(bearer_token(request))
        if state is not SessionState.VALID:
            logger.warning(f"Rejected {request.method} {request.path}: session {state.value}")
            return web.json_response(UNAUTHORIZED, status=401)
        return await handler(request)
    return wrapper


def config_guard(handler: Handler) -> Handler:
    """Apply the admin guard to /api/config only when CONFIG_API_REQUIRE_AUTH is set."""
    guarded = require_admin(handler)

    @functools.wraps(handler)
    async def wrapper(request: web.Request) -> web.StreamResponse:
        if _context(request).settings.config_api_require_auth:
            return await guarded(request)
        return await handler(request)
    return wrapper


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.error(f"Unhandled error on {request.method} {request.path}: {str(e)}")
        logger.error(traceback.format_exc())
        return web.json_response({'success': False, 'error': 'Internal server error'}, status=500)


# Analytics

async def get_analytics(request: web.Request) -> web.Response:
    snapshot = _context(request).snapshot_store.load()
    if snapshot is None:
        return web.json_response({'error': 'No data yet, make sure the refresh job has run'}, status=404)
    return web.json_response(snapshot.to_dict())


async def get_status(request: web.Request) -> web.Response:
    ctx = _context(request)
    snapshot = ctx.snapshot_store.load()
    scheduler = ctx.scheduler
    accounts = merge_accounts(ctx.accounts, ctx.config_store.load())

    return web.json_response({
        'status': 'running',
        'lastUpdate': ctx.snapshot_store.last_modified() if snapshot is not None else None,
        'dataExists': snapshot is not None,
        'hasAccounts': bool(accounts),
        'hasValidData': snapshot.has_valid_data if snapshot is not None else False,
        'hasErrors': snapshot.has_errors if snapshot is not None else False,
        'accounts': len(accounts),
        'refreshing': scheduler.running if scheduler else False,
        'lastCycle': scheduler.last_result.to_dict() if scheduler and scheduler.last_result else None,
        'timestamp': _now()
    })


async def post_update(request: web.Request) -> web.Response:
    scheduler = _context(request).scheduler
    result = await scheduler.trigger('manual')
    if result is None:
        return web.json_response(
            {'success': False, 'error': 'A refresh is already running'},
            status=409
        )
    if not result.success:
        return web.json_response(
            {'success': False, 'error': result.reason or 'Refresh failed'},
            status=500
        )
    return web.json_response({
        'success': True,
        'message': 'Data update completed',
        'zones': result.zones,
        'errors': result.errors
    })


# Config document

@config_guard
async def get_config(request: web.Request) -> web.Response:
    return web.json_response(redact(_context(request).config_store.load()))


@config_guard
async def post_config(request: web.Request) -> web.Response:
    body = await _json_body(request)
    try:
        _context(request).config_store.replace_public(body)
    except PersistenceError as e:
        logger.error(str(e))
        return web.json_response({'success': False, 'error': 'Could not save configuration'}, status=500)
    return web.json_response({'success': True})


# Provider validation

async def _validate(request: web.Request, provider: str, fields: Tuple[str, ...]) -> web.Response:
    body = await _json_body(request)
    adapter = _context(request).adapters.get(provider)
    if adapter is None:
        return web.json_response({'valid': False, 'error': f'{provider} is not available'})
    result = await adapter.validate_credentials({name: body.get(name) for name in fields})
    return web.json_response(result)


async def validate_cloudflare(request: web.Request) -> web.Response:
    return await _validate(request, PROVIDER_CLOUDFLARE, ('token',))


async def validate_edgeone(request: web.Request) -> web.Response:
    return await _validate(request, PROVIDER_EDGEONE, ('secretId', 'secretKey', 'region'))


# edgeone.ai site statistics

async def _edgeone_ai_request(request: web.Request, call: Callable[..., Awaitable[Dict]]) -> web.Response:
    """Shared plumbing of the edgeone.ai endpoints: parameters, ApiKey and error mapping."""
    ctx = _context(request)
    site_id = request.query.get('siteId', '').strip()
    if not site_id:
        return web.json_response({'error': 'siteId is required'}, status=400)

    section = ctx.config_store.load().get(PROVIDER_EDGEONE_AI)
    api_key = section.get('apiKey') if isinstance(section, dict) else None
    if not api_key:
        return web.json_response({'error': 'edgeone.ai API key is not configured'}, status=401)

    now = datetime.now(timezone.utc)
    try:
        start = parse_moment(request.query.get('startDate'), now - DEFAULT_RANGE)
        end = parse_moment(request.query.get('endDate'), now)
    except ValueError:
        return web.json_response({'error': 'startDate and endDate must be ISO 8601 dates'}, status=400)

    client = EdgeOneAIClient(
        ctx.http_session,
        str(api_key),
        base_url=ctx.settings.edgeone_ai_base_url,
        request_timeout=ctx.settings.request_timeout
    )
    try:
        return web.json_response(await call(client, site_id, start, end))
    except ProviderAuthError as e:
        logger.error(f"edgeone.ai rejected the ApiKey: {str(e)}")
        return web.json_response({'error': e.hint or str(e)}, status=e.status or 401)
    except ProviderTransientError as e:
        logger.error(f"edgeone.ai unavailable: {str(e)}")
        return web.json_response({'error': str(e)}, status=e.status or 503)
    except ProviderResponseError as e:
        logger.error(f"edgeone.ai call failed: {str(e)}")
        return web.json_response({'error': str(e)}, status=e.status or 400)


async def edgeone_ai_stats(request: web.Request) -> web.Response:
    unit = request.query.get('unit') or 'day'
    tz = request.query.get('timezone') or 'UTC'
    return await _edgeone_ai_request(
        request,
        lambda client, site_id, start, end: client.get_stats(site_id, start, end, unit=unit, tz=tz)
    )


async def edgeone_ai_metrics(request: web.Request) -> web.Response:
    field = request.query.get('field') or 'pageviews'
    return await _edgeone_ai_request(
        request,
        lambda client, site_id, start, end: client.get_metrics(site_id, start, end, field=field)
    )


# Install and login

async def get_install_status(request: web.Request) -> web.Response:
    credentials = _context(request).credentials
    return web.json_response({
        'isInstalled': credentials.is_installed(),
        'adminPath': credentials.admin_path()
    })


async def _form_fields(request: web.Request) -> Dict[str, str]:
    if request.content_type == 'application/json':
        body = await _json_body(request)
        return {k: str(v) for k, v in body.items() if isinstance(v, (str, int, float))}
    form = await request.post()
    # Uploaded files (the favicon) are not stored
    return {k: v for k, v in form.items() if isinstance(v, str)}


async def post_install(request: web.Request) -> web.Response:
    fields = await _form_fields(request)
    credentials = _context(request).credentials
    try:
        admin_path = await asyncio.to_thread(
            credentials.install,
            username=fields.get('adminUsername', '').strip(),
            password=fields.get('adminPassword', ''),
            site_name=fields.get('siteName', '').strip(),
            site_description=fields.get('siteDescription', '').strip()
        )
    except InstallError as e:
        return web.json_response({'success': False, 'error': str(e)}, status=409)
    except PersistenceError as e:
        logger.error(f"Install failed: {str(e)}")
        return web.json_response({'success': False, 'error': 'Could not save configuration'}, status=500)
    return web.json_response({'success': True, 'adminPath': admin_path})


async def post_login(request: web.Request) -> web.Response:
    body = await _json_body(request)
    username = str(body.get('username') or '')
    password = str(body.get('password') or '')
    if not username or not password:
        return web.json_response({'success': False, 'error': 'Username and password are required'})

    credentials = _context(request).credentials
    try:
        authenticated = await asyncio.to_thread(credentials.authenticate, username, password)
    except InstallError:
        return web.json_response({'success': False, 'error': 'System is not installed, finish the install first'})

    if not authenticated:
        logger.warning(f"Failed login for user '{username}'")
        return web.json_response({'success': False, 'error': 'Invalid username or password'})

    try:
        session = credentials.issue_session()
    except PersistenceError as e:
        logger.error(f"Login could not save the session: {str(e)}")
        return web.json_response({'success': False, 'error': 'Could not start a session'})

    logger.info(f"User '{username}' logged in")
    return web.json_response({
        'success': True,
        'token': session.token,
        'adminPath': credentials.admin_path()
    })


async def get_admin_path(request: web.Request) -> web.Response:
    credentials = _context(request).credentials
    return web.json_response({
        'path': credentials.admin_path(),
        'configured': credentials.is_installed()
    })


# Admin (bearer token required)

@require_admin
async def admin_verify(request: web.Request) -> web.Response:
    return web.json_response({'valid': True})


@require_admin
async def admin_refresh_token(request: web.Request) -> web.Response:
    try:
        session = _context(request).credentials.issue_session()
    except PersistenceError as e:
        logger.error(f"Token refresh failed: {str(e)}")
        return web.json_response({'success': False, 'error': 'Could not refresh the session'}, status=500)
    return web.json_response({'success': True, 'token': session.token})


@require_admin
async def admin_website(request: web.Request) -> web.Response:
    body = await _json_body(request)
    site_name = body.get('siteName')
    site_description = body.get('siteDescription')
    if not isinstance(site_name, (str, type(None))) or not isinstance(site_description, (str, type(None))):
        return web.json_response({'success': False, 'error': 'siteName and siteDescription must be strings'},
                                 status=400)

    store = _context(request).config_store
    document = store.load()
    website = document.get('website') or {}
    document['website'] = {
        'title': (site_name or '').strip() or website.get('title') or DEFAULT_WEBSITE['title'],
        'favicon': website.get('favicon') or DEFAULT_WEBSITE['favicon'],
        'description': (site_description or '').strip() or website.get('description')
        or DEFAULT_WEBSITE['description'],
    }
    store.save(document)
    return web.json_response({'success': True})


def merge_imported_accounts(document: Dict, rows: List[Dict]) -> int:
    """
    Map spreadsheet rows onto provider accounts in the config document.

    A row with an AKID/IKID secret id and a secret key becomes an EdgeOne
    account; a row with token, zone_id and domain becomes a Cloudflare account.
    Rows whose credentials are already present are skipped.
    """
    edgeone = document.setdefault('edgeone', {'enabled': True, 'accounts': []})
    cloudflare = document.setdefault('cloudflare', {'enabled': True, 'accounts': []})
    edgeone.setdefault('accounts', [])
    cloudflare.setdefault('accounts', [])

    imported = 0
    for row in rows:
        if not isinstance(row, dict):
            continue
        secret_id = str(row.get('secretid') or row.get('secret_id') or row.get('secretId') or '').strip()
        secret_key = str(row.get('secretkey') or row.get('secret_key') or row.get('secretKey') or '').strip()
        token = str(row.get('token') or row.get('cf_token') or '').strip()
        zone_id = str(row.get('zone_id') or row.get('zoneid') or '').strip()
        domain = str(row.get('domain') or '').strip()
        name = str(row.get('name') or row.get('account_name') or '').strip() or \
            f"Account {len(edgeone['accounts']) + len(cloudflare['accounts']) + 1}"

        if secret_id.startswith(('AKID', 'IKID')) and secret_key:
            if not any(a.get('secretId') == secret_id for a in edgeone['accounts']):
                edgeone['accounts'].append({
                    'name': name,
                    'secretId': secret_id,
                    'secretKey': secret_key,
                    'region': row.get('region') or 'ap-hongkong',
                    'zones': [{'zone_id': zone_id, 'domain': domain, 'name': domain}] if zone_id and domain else []
                })
                imported += 1

        if token and zone_id and domain:
            if not any(a.get('token') == token for a in cloudflare['accounts']):
                cloudflare['accounts'].append({
                    'name': name,
                    'token': token,
                    'zones': [{'zone_id': zone_id, 'domain': domain, 'name': domain}]
                })
                imported += 1

    return imported


@require_admin
async def admin_import_csv(request: web.Request) -> web.Response:
    body = await _json_body(request)
    rows = body.get('accounts')
    if not isinstance(rows, list):
        return web.json_response({'success': False, 'error': 'accounts must be a list'}, status=400)

    store = _context(request).config_store
    document = store.load()
    imported = merge_imported_accounts(document, rows)
    store.save(document)
    logger.info(f"Imported {imported} account(s)")
    return web.json_response({
        'success': True,
        'importedCount': imported,
        'message': f'Imported {imported} account(s)'
    })


@require_admin
async def post_reset(request: web.Request) -> web.Response:
    ctx = _context(request)
    try:
        ctx.snapshot_store.delete()
        ctx.config_store.delete()
    except PersistenceError as e:
        logger.error(f"Reset failed: {str(e)}")
        return web.json_response({'success': False, 'error': 'Could not remove stored files'}, status=500)
    ctx.credentials.clear()
    logger.info("System reset to its initial state")
    return web.json_response({'success': True, 'message': 'System reset to its initial state'})


# Pages

def resolve_page(path: str, document: Dict, installed: bool, has_accounts: bool) -> Tuple[str, str]:
    """
    Decide what an unmatched GET path shows.

    Returns ``('redirect', location)`` or ``('file', relative_path)``.
    """
    admin_path = document.get('adminPath')
    if installed and admin_path and path.startswith(admin_path):
        return 'file', 'admin/index.html'
    if not installed:
        if path in ('', '/'):
            return 'redirect', '/admin/install.html'
        return 'file', 'admin/install.html'
    if path in ('', '/') and not has_accounts:
        return 'file', 'admin/nodata.html'
    return 'file', 'index.html'


async def catch_all(request: web.Request) -> web.StreamResponse:
    if request.path.startswith('/api/'):
        return web.json_response({'error': 'API endpoint not found'}, status=404)

    ctx = _context(request)
    document = ctx.config_store.load()
    installed = ctx.credentials.admin_identity(document) is not None
    has_accounts = bool(merge_accounts(ctx.accounts, document))

    kind, target = resolve_page(request.path, document, installed, has_accounts)
    if kind == 'redirect':
        raise web.HTTPFound(target)

    page = Path(ctx.settings.web_root) / target
    if not page.is_file():
        return web.Response(status=404, text='Not found')
    if target == 'admin/nodata.html':
        html = page.read_text(encoding='utf-8')
        return web.Response(text=html.replace('ADMIN_PATH', ctx.credentials.admin_path()), content_type='text/html')
    return web.FileResponse(page)


# Application

def setup_routes(app: web.Application, web_root: Path) -> None:
    app.router.add_get('/api/analytics', get_analytics)
    app.router.add_get('/api/status', get_status)
    app.router.add_get('/api/config', get_config)
    app.router.add_post('/api/config', post_config)
    app.router.add_post('/api/validate/cloudflare', validate_cloudflare)
    app.router.add_post('/api/validate/edgeone', validate_edgeone)
    app.router.add_get('/api/edgeone-ai/stats', edgeone_ai_stats)
    app.router.add_get('/api/edgeone-ai/metrics', edgeone_ai_metrics)
    app.router.add_post('/api/update', post_update)
    app.router.add_get('/api/install/status', get_install_status)
    app.router.add_post('/api/install', post_install)
    app.router.add_post('/api/login', post_login)
    app.router.add_get('/api/admin/path', get_admin_path)
    app.router.add_get('/api/admin/verify', admin_verify)
    app.router.add_post('/api/admin/refresh-token', admin_refresh_token)
    app.router.add_post('/api/admin/website', admin_website)
    app.router.add_post('/api/admin/import-csv', admin_import_csv)
    app.router.add_post('/api/reset', post_reset)

    for prefix in ('static', 'admin'):
        directory = Path(web_root) / prefix
        if directory.is_dir():
            app.router.add_static(f'/{prefix}', directory)

    # Must stay last: the resolver answers every other GET
    app.router.add_get('/{tail:.*}', catch_all)


def create_app(context: AppContext, adapters: Optional[Dict] = None,
               start_scheduler: bool = True) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[CONTEXT_KEY] = context
    setup_routes(app, context.settings.web_root)

    async def lifecycle(app: web.Application):
        await context.start(adapters)
        task = None
        if start_scheduler:
            task = asyncio.create_task(
                context.scheduler.run_forever(run_immediately=context.settings.refresh_on_start)
            )
            logger.info(f"Scheduled refresh every {context.settings.refresh_interval} seconds")
        yield
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await context.close()

    app.cleanup_ctx.append(lifecycle)
    return app
