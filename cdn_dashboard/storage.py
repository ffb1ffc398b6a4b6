"""
Persistence for the two documents the service owns: the analytics snapshot and
the mutable config document. Both are replaced wholesale, never patched.
"""
import copy
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from .errors import ConfigError, PersistenceError
from .types import Snapshot

logger = logging.getLogger(__name__)

DEFAULT_WEBSITE = {
    'title': 'Analytics Dashboard',
    'favicon': '/favicon.svg',
    'description': ''
}

DEFAULT_CONFIG_DOCUMENT = {
    'provider': 'cloudflare',
    'cloudflare': {'enabled': True, 'accounts': []},
    'edgeone-ai': {'apiKey': '', 'userId': ''},
    'website': DEFAULT_WEBSITE,
    'updateInterval': 2
}

# Keys owned by the server; never exposed through or overwritten by /api/config
PROTECTED_KEYS = ('admin', 'security', 'session', 'adminPath')
SECRET_KEYS = ('admin', 'security', 'session')


def atomic_write_json(path: Path, data: Dict) -> None:
    """Write JSON to a temp file beside ``path`` and rename it into place."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix='.tmp', dir=str(path.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
    except OSError as e:
        raise PersistenceError(f"Could not write {path}: {str(e)}") from e


def _read_json(path: Path) -> Optional[Dict]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except FileNotFoundError:
        return None


def _delete(path: Path) -> bool:
    try:
        os.unlink(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        raise PersistenceError(f"Could not delete {path}: {str(e)}") from e


class SnapshotStore:
    """Durable home of the latest merged Snapshot."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Optional[Snapshot]:
        """Return the stored snapshot, or None before the first successful cycle."""
        try:
            data = _read_json(self.path)
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Snapshot {self.path} is unreadable, treating as absent: {str(e)}")
            return None
        if data is None:
            return None
        if not isinstance(data, dict):
            logger.error(f"Snapshot {self.path} is not a JSON object, treating as absent")
            return None
        return Snapshot.from_dict(data)

    def replace(self, snapshot: Snapshot) -> None:
        atomic_write_json(self.path, snapshot.to_dict())
        logger.info(f"Snapshot saved to {self.path}")

    def delete(self) -> bool:
        return _delete(self.path)

    def last_modified(self) -> Optional[str]:
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return None
        return datetime.fromtimestamp(mtime, tz=timezone.utc).isoformat()


class ConfigDocumentStore:
    """The runtime-mutable JSON config document (providers, branding, admin, session)."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def _read(self) -> Optional[Dict]:
        try:
            data = _read_json(self.path)
        except json.JSONDecodeError as e:
            raise ConfigError(f"{self.path} is not valid JSON: {str(e)}") from e
        except OSError as e:
            raise ConfigError(f"{self.path} is unreadable: {str(e)}") from e
        if data is not None and not isinstance(data, dict):
            raise ConfigError(f"{self.path} must contain a JSON object")
        return data

    def load(self) -> Dict:
        """Return the document, falling back to defaults when missing or broken."""
        try:
            data = self._read()
        except ConfigError as e:
            logger.error(f"Using default config document: {str(e)}")
            data = None
        if data is None:
            return copy.deepcopy(DEFAULT_CONFIG_DOCUMENT)
        return data

    def save(self, document: Dict) -> None:
        atomic_write_json(self.path, document)
        logger.debug(f"Config document saved to {self.path}")

    def replace_public(self, document: Dict) -> Dict:
        """Replace the document from client input, keeping server-owned keys."""
        current = self.load() if self.exists() else {}
        new_document = {k: v for k, v in document.items() if k not in PROTECTED_KEYS}
        for key in PROTECTED_KEYS:
            if key in current:
                new_document[key] = current[key]
        self.save(new_document)
        return new_document

    def delete(self) -> bool:
        return _delete(self.path)


def redact(document: Dict) -> Dict:
    """Copy of the config document safe to hand to clients."""
    return {k: v for k, v in document.items() if k not in SECRET_KEYS}
