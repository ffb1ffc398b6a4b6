"""
Admin credential and session handling.

The admin password is stored as a salted PBKDF2 digest. Logging in yields one
bearer token valid for an hour; issuing a new one revokes the previous one.
The obfuscated admin path only makes the admin UI harder to find. It is not a
security boundary and never replaces the bearer-token check.
"""
import hashlib
import hmac
import logging
import secrets
import time
from typing import Callable, Dict, Optional

from .errors import InstallError
from .storage import ConfigDocumentStore, DEFAULT_WEBSITE
from .types import AdminIdentity, Session, SessionState

logger = logging.getLogger(__name__)

HASH_ITERATIONS = 100000
HASH_KEY_LENGTH = 64
SESSION_TTL_SECONDS = 3600
DEFAULT_ADMIN_USERNAME = 'admin'
DEFAULT_ADMIN_PASSWORD = 'admin123'


def generate_salt(length: int = 16) -> str:
    return secrets.token_hex(length)


def generate_admin_path() -> str:
    return '/' + secrets.token_hex(8)


def hash_password(password: str, salt: str, iterations: int = HASH_ITERATIONS) -> str:
    digest = hashlib.pbkdf2_hmac(
        'sha512',
        password.encode('utf-8'),
        salt.encode('utf-8'),
        iterations,
        dklen=HASH_KEY_LENGTH
    )
    return digest.hex()


def verify_password(password: str, salt: str, digest: str, iterations: int = HASH_ITERATIONS) -> bool:
    candidate = hash_password(password, salt, iterations)
    return hmac.compare_digest(candidate, digest or '')


class CredentialStore:
    """Admin identity, install state and the single active session."""

    def __init__(self, config_store: ConfigDocumentStore,
                 clock: Callable[[], float] = time.time,
                 ttl: int = SESSION_TTL_SECONDS):
        self.config_store = config_store
        self.clock = clock
        self.ttl = ttl
        self._session = self._load_session()

    def _load_session(self) -> Optional[Session]:
        document = self.config_store.load()
        session = document.get('session')
        if not isinstance(session, dict) or not session.get('token'):
            return None
        try:
            return Session(token=str(session['token']), expiry=float(session.get('expiry', 0)))
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed persisted session")
            return None

    @property
    def session(self) -> Optional[Session]:
        return self._session

    def admin_identity(self, document: Optional[Dict] = None) -> Optional[AdminIdentity]:
        document = document if document is not None else self.config_store.load()
        admin = document.get('admin')
        if not isinstance(admin, dict) or not admin.get('username'):
            return None
        security = document.get('security') or {}
        return AdminIdentity(
            username=admin['username'],
            password_hash=admin.get('password', ''),
            salt=security.get('salt', '')
        )

    def is_installed(self) -> bool:
        return self.admin_identity() is not None

    def admin_path(self) -> str:
        return self.config_store.load().get('adminPath') or '/admin'

    def install(self, username: str, password: str,
                site_name: str = '', site_description: str = '') -> str:
        """Create the admin identity and admin path. Refused once an admin exists."""
        document = self.config_store.load()
        if self.admin_identity(document) is not None:
            raise InstallError('System is already installed')

        if not username or not password:
            logger.warning("Install without explicit credentials, using the default admin login")
        username = username or DEFAULT_ADMIN_USERNAME
        password = password or DEFAULT_ADMIN_PASSWORD

        website = document.get('website') or {}
        document['website'] = {
            'title': site_name or website.get('title') or DEFAULT_WEBSITE['title'],
            'favicon': website.get('favicon') or DEFAULT_WEBSITE['favicon'],
            'description': site_description or website.get('description') or DEFAULT_WEBSITE['description'],
        }
        document['adminPath'] = document.get('adminPath') or generate_admin_path()

        security = document.get('security') or {}
        salt = security.get('salt') or generate_salt()
        document['security'] = {'salt': salt, 'iterations': HASH_ITERATIONS}
        document['admin'] = {
            'username': username,
            'password': hash_password(password, salt)
        }
        document.pop('session', None)

        self.config_store.save(document)
        self._session = None
        logger.info(f"Admin account '{username}' installed")
        return document['adminPath']

    def authenticate(self, username: str, password: str) -> bool:
        """Check a login attempt. Has no effect on the active session."""
        identity = self.admin_identity()
        if identity is None:
            raise InstallError('System is not installed')
        # Always pay for the hash so a wrong username costs the same as a wrong password
        password_ok = verify_password(password, identity.salt, identity.password_hash)
        username_ok = hmac.compare_digest(username.encode('utf-8'), identity.username.encode('utf-8'))
        return password_ok and username_ok

    def issue_session(self) -> Session:
        """Create a new session, replacing any previous one."""
        session = Session(token=secrets.token_hex(32), expiry=self.clock() + self.ttl)
        document = self.config_store.load()
        document['session'] = session.to_dict()
        self.config_store.save(document)
        self._session = session
        return session

    def validate(self, token: Optional[str]) -> SessionState:
        session = self._session
        if not token or session is None:
            return SessionState.ABSENT
        if not hmac.compare_digest(token.encode('utf-8'), session.token.encode('utf-8')):
            return SessionState.ABSENT
        if session.is_expired(self.clock()):
            logger.info("Admin session expired")
            self._session = None
            return SessionState.EXPIRED
        return SessionState.VALID

    def clear(self) -> None:
        self._session = None
