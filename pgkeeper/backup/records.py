"""
Backup record model.

A BackupRecord describes one backup attempt. Records are plain dataclasses
serialized to JSON for the small-record state store; the status field follows
a fixed state machine:

    pending -> in_progress -> completed | failed
    completed -> verified
"""

import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional, Dict, Any


class BackupType:
    """Logical dump scope. Values are embedded in storage keys."""
    FULL = 'full'
    SCHEMA_ONLY = 'schema'
    DATA_ONLY = 'data'

    ALL = (FULL, SCHEMA_ONLY, DATA_ONLY)


class BackupTier:
    """Retention bucket assigned when the backup is created."""
    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'

    ALL = (DAILY, WEEKLY, MONTHLY)


class BackupStatus:
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    FAILED = 'failed'
    VERIFIED = 'verified'

    TERMINAL = (COMPLETED, FAILED, VERIFIED)
    SUCCESSFUL = (COMPLETED, VERIFIED)


# Allowed status transitions
TRANSITIONS = {
    BackupStatus.PENDING: (BackupStatus.IN_PROGRESS,),
    BackupStatus.IN_PROGRESS: (BackupStatus.COMPLETED, BackupStatus.FAILED),
    BackupStatus.COMPLETED: (BackupStatus.VERIFIED,),
    BackupStatus.FAILED: (),
    BackupStatus.VERIFIED: (),
}


class InvalidTransitionError(ValueError):
    """Raised when a record is moved along an edge the state machine forbids."""
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    """Render a datetime as ISO-8601 UTC with millisecond precision and a Z suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime('%Y-%m-%dT%H:%M:%S.') + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp (Z suffix allowed) into an aware datetime."""
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def determine_backup_tier(date: datetime) -> str:
    """
    Derive the retention tier from a calendar date.

    The 1st of the month is always monthly, even when it is a Sunday.
    Other Sundays are weekly and every remaining day is daily.

    Args:
        date: Date (or datetime) the backup starts on

    Returns:
        One of BackupTier.ALL
    """
    if date.day == 1:
        return BackupTier.MONTHLY
    # Python: Monday == 0, Sunday == 6
    if date.weekday() == 6:
        return BackupTier.WEEKLY
    return BackupTier.DAILY


def format_storage_key(tier: str, backup_type: str, backup_id: str, timestamp: str) -> str:
    """
    Build the object-store key for a backup.

    Format: backups/<tier>/<YYYY>/<MM>/<DD>/<type>-<id>.sql.gz

    The date parts come from the UTC attempt start time.
    """
    date = parse_timestamp(timestamp).astimezone(timezone.utc)
    return (
        f"backups/{tier}/{date.year:04d}/{date.month:02d}/{date.day:02d}/"
        f"{backup_type}-{backup_id}.sql.gz"
    )


@dataclass
class BackupRecord:
    """One row per backup attempt."""

    id: str
    timestamp: str
    type: str
    tier: str
    status: str = BackupStatus.PENDING
    size_bytes: int = 0
    checksum: str = ''
    storage_key: str = ''
    duration_ms: int = 0
    verified_at: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def start(cls, backup_type: str = BackupType.FULL, tier: Optional[str] = None,
              now: Optional[datetime] = None) -> 'BackupRecord':
        """
        Create a record for a new attempt.

        Args:
            backup_type: One of BackupType.ALL
            tier: Explicit tier override; derived from the date when omitted
            now: Attempt start time (defaults to the current UTC time)

        Raises:
            ValueError: If backup_type or tier is unknown
        """
        if backup_type not in BackupType.ALL:
            raise ValueError(
                f"Invalid backup type: {backup_type}. Valid options: {list(BackupType.ALL)}"
            )
        if tier is not None and tier not in BackupTier.ALL:
            raise ValueError(
                f"Invalid backup tier: {tier}. Valid options: {list(BackupTier.ALL)}"
            )

        now = now or utc_now()
        return cls(
            id=str(uuid.uuid4()),
            timestamp=isoformat(now),
            type=backup_type,
            tier=tier or determine_backup_tier(now),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in BackupStatus.TERMINAL

    @property
    def is_successful(self) -> bool:
        return self.status in BackupStatus.SUCCESSFUL

    def transition(self, new_status: str):
        """
        Move the record to a new status.

        Raises:
            InvalidTransitionError: If the edge is not in TRANSITIONS
        """
        allowed = TRANSITIONS.get(self.status, ())
        if new_status not in allowed:
            raise InvalidTransitionError(
                f"Cannot move backup {self.id} from {self.status} to {new_status}"
            )
        self.status = new_status

    def mark_verified(self, when: Optional[datetime] = None):
        self.transition(BackupStatus.VERIFIED)
        self.verified_at = isoformat(when or utc_now())

    def storage_key_for(self) -> str:
        return format_storage_key(self.tier, self.type, self.id, self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupRecord':
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{key: value for key, value in data.items() if key in known})


@dataclass
class BackupResult:
    """Outcome of one backup attempt as seen by the caller."""

    success: bool
    record: Optional[BackupRecord] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'record': self.record.to_dict() if self.record else None,
            'error': self.error,
        }
