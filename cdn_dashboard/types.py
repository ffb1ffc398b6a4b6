from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional, Any, Iterable, Tuple
import logging

logger = logging.getLogger(__name__)

PROVIDER_CLOUDFLARE = 'cloudflare'
PROVIDER_EDGEONE = 'edgeone'
PROVIDERS = (PROVIDER_CLOUDFLARE, PROVIDER_EDGEONE)

METRIC_FIELDS = ('requests', 'bytes', 'threats', 'cachedRequests', 'cachedBytes')


def _counter(value: Any) -> int:
    """Coerce a provider counter into a non-negative int (null/garbage -> 0)."""
    try:
        number = int(value or 0)
    except (TypeError, ValueError):
        return 0
    return max(number, 0)


@dataclass(frozen=True)
class Zone:
    """One traffic-measured unit (Cloudflare zone or EdgeOne site)."""
    zone_id: str
    domain: str

    @classmethod
    def from_dict(cls, data: Dict) -> 'Zone':
        zone_id = str(data.get('zone_id') or data.get('id') or '').strip()
        domain = str(data.get('domain') or data.get('name') or zone_id).strip()
        return cls(zone_id=zone_id, domain=domain or zone_id)

    def to_dict(self) -> Dict:
        return {'zone_id': self.zone_id, 'domain': self.domain}


@dataclass(frozen=True)
class Account:
    """Provider account: opaque credentials plus the zones measured with them."""
    name: str
    provider: str
    credentials: Tuple[Tuple[str, str], ...]
    zones: Tuple[Zone, ...] = ()

    @property
    def identity(self) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
        return (self.provider, self.credentials)

    def credential(self, key: str, default: str = '') -> str:
        return dict(self.credentials).get(key, default)

    @classmethod
    def create(cls, name: str, provider: str, credentials: Dict[str, str],
               zones: Iterable[Zone] = ()) -> 'Account':
        items = tuple(sorted((str(k), str(v)) for k, v in credentials.items() if v is not None))
        return cls(name=name, provider=provider, credentials=items, zones=tuple(zones))


@dataclass
class MetricPoint:
    """Unified traffic counters for one day or one hour."""
    timestamp: str
    requests: int = 0
    bytes: int = 0
    threats: int = 0
    cachedRequests: int = 0
    cachedBytes: int = 0

    def __post_init__(self):
        for name in METRIC_FIELDS:
            setattr(self, name, _counter(getattr(self, name)))

    def to_dict(self) -> Dict:
        # The dashboard reads the timestamp under "date"
        data = {'date': self.timestamp}
        for name in METRIC_FIELDS:
            data[name] = getattr(self, name)
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'MetricPoint':
        return cls(
            timestamp=str(data.get('date', data.get('timestamp', ''))),
            **{name: data.get(name, 0) for name in METRIC_FIELDS}
        )


def normalize_points(points: Iterable[MetricPoint]) -> List[MetricPoint]:
    """Deduplicate by timestamp (first occurrence wins) and order newest-first."""
    seen = set()
    unique = []
    duplicates = 0
    for point in points:
        if not point.timestamp:
            logger.warning("Skipping metric point without timestamp")
            continue
        if point.timestamp in seen:
            duplicates += 1
            continue
        seen.add(point.timestamp)
        unique.append(point)

    if duplicates:
        logger.debug(f"Removed {duplicates} duplicate metric points")

    return sorted(unique, key=lambda p: p.timestamp, reverse=True)


@dataclass
class ZoneResult:
    zone_id: str
    domain: str
    days: List[MetricPoint] = field(default_factory=list)
    hours: List[MetricPoint] = field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def failed(cls, zone: Zone, error: str) -> 'ZoneResult':
        return cls(zone_id=zone.zone_id, domain=zone.domain, error=error or 'unknown error')

    def to_dict(self) -> Dict:
        data = {
            'zone_id': self.zone_id,
            'domain': self.domain,
            'days': [p.to_dict() for p in self.days],
            'hours': [p.to_dict() for p in self.hours],
        }
        if self.error:
            data['error'] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'ZoneResult':
        return cls(
            zone_id=str(data.get('zone_id', '')),
            domain=str(data.get('domain', '')),
            days=[MetricPoint.from_dict(p) for p in data.get('days') or []],
            hours=[MetricPoint.from_dict(p) for p in data.get('hours') or []],
            error=data.get('error'),
        )


@dataclass
class AccountResult:
    name: str
    zones: List[ZoneResult] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {'name': self.name, 'zones': [z.to_dict() for z in self.zones]}

    @classmethod
    def from_dict(cls, data: Dict) -> 'AccountResult':
        return cls(
            name=str(data.get('name', '')),
            zones=[ZoneResult.from_dict(z) for z in data.get('zones') or []],
        )


@dataclass
class Snapshot:
    """The merged analytics document for every account and zone."""
    accounts: List[AccountResult] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {'accounts': [a.to_dict() for a in self.accounts]}

    @classmethod
    def from_dict(cls, data: Dict) -> 'Snapshot':
        return cls(accounts=[AccountResult.from_dict(a) for a in data.get('accounts') or []])

    def iter_zones(self) -> Iterable[ZoneResult]:
        for account in self.accounts:
            yield from account.zones

    @property
    def has_valid_data(self) -> bool:
        return any(zone.days for zone in self.iter_zones())

    @property
    def has_errors(self) -> bool:
        return any(zone.error for zone in self.iter_zones())


class SessionState(Enum):
    VALID = 'valid'
    EXPIRED = 'expired'
    ABSENT = 'absent'


@dataclass
class Session:
    token: str
    expiry: float

    def is_expired(self, now: float) -> bool:
        return now > self.expiry

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class AdminIdentity:
    username: str
    password_hash: str
    salt: str


@dataclass
class CycleResult:
    """Outcome of one refresh cycle."""
    success: bool
    started_at: str
    finished_at: str
    zones: int = 0
    errors: int = 0
    reason: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)
