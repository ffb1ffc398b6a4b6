import os
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Any, Mapping

import yaml
from dotenv import load_dotenv
from concurrent_log_handler import ConcurrentRotatingFileHandler

from .errors import ConfigError
from .types import Account, Zone, PROVIDER_CLOUDFLARE, PROVIDER_EDGEONE, PROVIDERS

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DEFAULT_EDGEONE_REGION = 'ap-hongkong'


def setup_logging(level: Optional[str] = None, log_dir: Optional[str] = None) -> logging.Logger:
    """Configure console and rotating file logging for the whole process."""
    level_name = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    log_path = Path(log_dir or os.getenv('LOG_DIR', 'logs'))
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / 'cdn_dashboard.log'

    # Rotation is safe across processes sharing the log directory
    file_handler = ConcurrentRotatingFileHandler(
        str(log_file),
        maxBytes=5 * 1024 * 1024,
        backupCount=7,
        encoding='utf-8'
    )

    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
            file_handler
        ],
        force=True
    )

    # aiohttp access logs are noisy at INFO
    logging.getLogger('aiohttp.access').setLevel(max(log_level, logging.WARNING))

    logger.info(f"Logging initialized. Log file: {log_file}")
    logger.info(f"Python logger level: {logging.getLevelName(log_level)}")

    return logger


def _env_int(env: Mapping[str, str], name: str, default: int, minimum: int = 1) -> int:
    raw = env.get(name)
    if raw is None or raw == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {raw!r}, using {default}")
        return default
    if value < minimum:
        logger.warning(f"{name} must be >= {minimum}, using {default}")
        return default
    return value


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == '':
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


class Settings:
    """Process-level settings sourced from the environment (and a .env file)."""

    def __init__(self, env: Optional[Mapping[str, str]] = None, load_env_file: bool = True):
        if env is None:
            if load_env_file:
                load_dotenv()
            env = os.environ
        self.env = env

        # Server
        self.host = env.get('HOST', '0.0.0.0')
        self.port = _env_int(env, 'PORT', 4000)

        # Persisted state
        self.data_dir = Path(env.get('DATA_DIR', './data'))
        self.snapshot_path = self.data_dir / 'analytics.json'
        self.config_path = Path(env.get('CONFIG_PATH', './config.json'))
        self.zones_file = Path(env.get('ZONES_FILE', './zones.yml'))
        self.web_root = Path(env.get('WEB_ROOT', '.'))

        # Logging
        self.log_level = env.get('LOG_LEVEL', 'INFO')
        self.log_dir = env.get('LOG_DIR', 'logs')

        # Refresh cycle
        self.refresh_interval = _env_int(env, 'REFRESH_INTERVAL', 3600)
        self.refresh_on_start = _env_bool(env, 'REFRESH_ON_START', True)
        self.request_timeout = _env_int(env, 'REQUEST_TIMEOUT', 30)
        self.validation_timeout = _env_int(env, 'VALIDATION_TIMEOUT', 15)
        self.max_concurrency = _env_int(env, 'MAX_CONCURRENCY', 5)

        # edgeone.ai site statistics, proxied on demand
        self.edgeone_ai_base_url = env.get('EDGEONE_AI_BASE_URL', 'https://edgeone.ai/api/v1')

        # Hardening switch for the config endpoints
        self.config_api_require_auth = _env_bool(env, 'CONFIG_API_REQUIRE_AUTH', False)

    def __repr__(self) -> str:
        return (
            f"Settings("
            f"port={self.port}, "
            f"data_dir='{self.data_dir}', "
            f"config_path='{self.config_path}', "
            f"refresh_interval={self.refresh_interval}"
            f")"
        )


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(',') if part.strip()]


def _zones_from_lists(zone_ids: List[str], domains: List[str]) -> List[Zone]:
    return [
        Zone(zone_id=zone_id, domain=domains[index] if index < len(domains) and domains[index] else zone_id)
        for index, zone_id in enumerate(zone_ids)
    ]


def account_from_dict(data: Dict, default_name: str = 'Default account') -> Account:
    """Build an Account from a descriptor entry (CF_CONFIG, zones.yml or config.json)."""
    if not isinstance(data, dict):
        raise ConfigError(f"Account entry must be an object, got {type(data).__name__}")

    provider = str(data.get('provider') or '').lower()
    if not provider:
        provider = PROVIDER_EDGEONE if data.get('secretId') else PROVIDER_CLOUDFLARE
    if provider not in PROVIDERS:
        raise ConfigError(f"Unknown provider: {provider}")

    raw_zones = data.get('zones')
    if raw_zones is None:
        raw_zones = data.get('sites') or []
    if not isinstance(raw_zones, list):
        raise ConfigError("Account zones must be a list")
    zones = [Zone.from_dict(z) for z in raw_zones if isinstance(z, dict)]
    zones = [z for z in zones if z.zone_id]

    name = str(data.get('name') or default_name)

    if provider == PROVIDER_CLOUDFLARE:
        token = str(data.get('token') or '').strip()
        if not token:
            raise ConfigError(f"Cloudflare account {name} has no token")
        credentials = {'token': token}
    else:
        secret_id = str(data.get('secretId') or '').strip()
        secret_key = str(data.get('secretKey') or '').strip()
        if not secret_id or not secret_key:
            raise ConfigError(f"EdgeOne account {name} needs secretId and secretKey")
        credentials = {
            'secretId': secret_id,
            'secretKey': secret_key,
            'region': str(data.get('region') or DEFAULT_EDGEONE_REGION),
        }

    return Account.create(name=name, provider=provider, credentials=credentials, zones=zones)


def _accounts_from_entries(entries: Any, source: str) -> List[Account]:
    if not isinstance(entries, list):
        raise ConfigError(f"{source}: 'accounts' must be a list")
    accounts = []
    for index, entry in enumerate(entries, start=1):
        try:
            accounts.append(account_from_dict(entry, default_name=f"Account {index}"))
        except ConfigError as e:
            logger.error(f"{source}: skipping account #{index}: {str(e)}")
    return accounts


def _accounts_from_blob(blob: str) -> List[Account]:
    try:
        data = json.loads(blob)
    except json.JSONDecodeError as e:
        raise ConfigError(f"CF_CONFIG is not valid JSON: {str(e)}")
    if not isinstance(data, dict):
        raise ConfigError("CF_CONFIG must be a JSON object")
    return _accounts_from_entries(data.get('accounts', []), 'CF_CONFIG')


def _account_from_env_group(env: Mapping[str, str], suffix: str, default_name: str) -> Optional[Account]:
    tokens = _split(env.get(f'CF_TOKENS{suffix}'))
    zone_ids = _split(env.get(f'CF_ZONES{suffix}'))
    if not tokens:
        return None
    if not zone_ids:
        raise ConfigError(f"CF_TOKENS{suffix} is set but CF_ZONES{suffix} is missing")

    domains = _split(env.get(f'CF_DOMAINS{suffix}')) or zone_ids
    return Account.create(
        name=env.get(f'CF_ACCOUNT_NAME{suffix}') or default_name,
        provider=PROVIDER_CLOUDFLARE,
        credentials={'token': tokens[0]},
        zones=_zones_from_lists(zone_ids, domains),
    )


def _accounts_from_env_groups(env: Mapping[str, str]) -> List[Account]:
    accounts = []

    try:
        account = _account_from_env_group(env, '', 'Default account')
        if account:
            accounts.append(account)
    except ConfigError as e:
        logger.error(str(e))

    index = 1
    while env.get(f'CF_TOKENS_{index}'):
        try:
            account = _account_from_env_group(env, f'_{index}', f'Account {index}')
            if account:
                accounts.append(account)
        except ConfigError as e:
            logger.error(str(e))
        index += 1

    return accounts


def _accounts_from_file(path: Path) -> List[Account]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(f"Descriptor file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Descriptor file {path} is not valid YAML: {str(e)}")
    if not isinstance(data, dict):
        raise ConfigError(f"Descriptor file {path} must contain a mapping")
    return _accounts_from_entries(data.get('accounts', []), str(path))


def load_accounts(env: Optional[Mapping[str, str]] = None,
                  zones_file: Optional[Path] = None) -> Tuple[Account, ...]:
    """
    Resolve the account registry once at startup. First match wins:

    1. CF_CONFIG, a JSON blob with an "accounts" list
    2. CF_TOKENS / CF_ZONES / CF_DOMAINS / CF_ACCOUNT_NAME, then the _1, _2, ... groups
    3. the zones.yml descriptor file

    Broken sources are logged and skipped; the result may be empty.
    """
    env = os.environ if env is None else env
    zones_file = Path(zones_file or env.get('ZONES_FILE', './zones.yml'))

    if env.get('CF_CONFIG'):
        try:
            accounts = _accounts_from_blob(env['CF_CONFIG'])
            logger.info(f"Loaded {len(accounts)} account(s) from CF_CONFIG")
            return tuple(accounts)
        except ConfigError as e:
            logger.error(f"Ignoring CF_CONFIG: {str(e)}")

    accounts = _accounts_from_env_groups(env)
    if accounts:
        logger.info(f"Loaded {len(accounts)} account(s) from CF_TOKENS environment groups")
        return tuple(accounts)

    try:
        accounts = _accounts_from_file(zones_file)
        logger.info(f"Loaded {len(accounts)} account(s) from {zones_file}")
        return tuple(accounts)
    except ConfigError as e:
        logger.warning(f"No accounts loaded from descriptor file: {str(e)}")

    return ()


def provider_enabled(document: Dict, provider: str) -> bool:
    """Whether the mutable config document enables a provider."""
    if document.get('provider', PROVIDER_CLOUDFLARE) == provider:
        return True
    section = document.get(provider)
    return isinstance(section, dict) and bool(section.get('enabled'))


def accounts_from_document(document: Dict) -> List[Account]:
    """Accounts added at runtime through the config document."""
    accounts = []

    cloudflare = document.get('cloudflare')
    if isinstance(cloudflare, dict):
        for index, entry in enumerate(cloudflare.get('accounts') or [], start=1):
            if not isinstance(entry, dict) or not entry.get('token'):
                continue
            try:
                accounts.append(account_from_dict(
                    {**entry, 'provider': PROVIDER_CLOUDFLARE},
                    default_name=f"Cloudflare {index}"
                ))
            except ConfigError as e:
                logger.error(f"config document: skipping Cloudflare account #{index}: {str(e)}")

    edgeone = document.get('edgeone')
    if isinstance(edgeone, dict):
        entries = list(edgeone.get('accounts') or [])
        # Older documents keep a single EdgeOne credential at the top of the section
        if edgeone.get('secretId') and edgeone.get('secretKey'):
            entries.append({
                'name': edgeone.get('name') or 'Tencent EdgeOne',
                'secretId': edgeone.get('secretId'),
                'secretKey': edgeone.get('secretKey'),
                'region': edgeone.get('region'),
                'zones': edgeone.get('sites') or edgeone.get('zones') or [],
            })
        for index, entry in enumerate(entries, start=1):
            if not isinstance(entry, dict) or not entry.get('secretId'):
                continue
            try:
                accounts.append(account_from_dict(
                    {**entry, 'provider': PROVIDER_EDGEONE},
                    default_name=f"EdgeOne {index}"
                ))
            except ConfigError as e:
                logger.error(f"config document: skipping EdgeOne account #{index}: {str(e)}")

    return accounts


def merge_accounts(registry: Sequence[Account], document: Dict) -> List[Account]:
    """Registry accounts first, then config-document accounts not already in the registry."""
    accounts = list(registry)
    seen = {account.identity for account in accounts}
    for account in accounts_from_document(document):
        if account.identity not in seen:
            seen.add(account.identity)
            accounts.append(account)
    return accounts
