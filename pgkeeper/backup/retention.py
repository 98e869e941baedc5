"""
Retention policy enforcement for backups.

Deletes objects under backups/<tier>/ once they are older than the tier's
retention window. Weekly and monthly windows are approximated as 7 and 30
days per unit rather than calendar weeks and months.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from .records import BackupTier, utc_now
from .storage import StorageError

logger = logging.getLogger(__name__)

DAYS_PER_UNIT = {
    BackupTier.DAILY: 1,
    BackupTier.WEEKLY: 7,
    BackupTier.MONTHLY: 30,
}


@dataclass
class RetentionPolicy:
    """Per-tier maximum age: days, weeks and months respectively."""

    daily: int = 7
    weekly: int = 4
    monthly: int = 12

    def max_age_days(self, tier: str) -> int:
        """
        Convert a tier's retention count into days.

        Raises:
            ValueError: If tier is unknown
        """
        if tier not in DAYS_PER_UNIT:
            raise ValueError(f"Invalid backup tier: {tier}")
        return getattr(self, tier) * DAYS_PER_UNIT[tier]


def tier_prefix(tier: str) -> str:
    return f"backups/{tier}/"


class RetentionEnforcer:
    """
    Applies a RetentionPolicy to the object store.

    Each deletion is independent: a failure is counted and logged, and the
    sweep moves on. Running it again simply re-evaluates what is left.
    """

    def __init__(self, storage, policy: Optional[RetentionPolicy] = None):
        """
        Args:
            storage: S3Storage (or compatible) holding the backups
            policy: Retention windows (defaults: 7 daily, 4 weekly, 12 monthly)
        """
        self.storage = storage
        self.policy = policy or RetentionPolicy()

    def enforce(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Enforce retention for every tier.

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            {'deleted': int, 'errors': int}
        """
        now = now or utc_now()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        logger.info(
            f"Enforcing backup retention (daily={self.policy.daily}, "
            f"weekly={self.policy.weekly}, monthly={self.policy.monthly})"
        )

        summary = {'deleted': 0, 'errors': 0}

        for tier in BackupTier.ALL:
            try:
                result = self.enforce_tier(tier, now)
                summary['deleted'] += result['deleted']
                summary['errors'] += result['errors']
            except Exception as e:
                summary['errors'] += 1
                logger.error(f"Failed to enforce retention for tier {tier}: {e}")

        logger.info(
            f"Retention enforcement complete. "
            f"Deleted: {summary['deleted']}, Errors: {summary['errors']}"
        )
        return summary

    def enforce_tier(self, tier: str, now: datetime) -> Dict[str, int]:
        """
        Delete expired objects for one tier.

        Raises:
            StorageError: If the tier cannot be listed
        """
        cutoff = now - timedelta(days=self.policy.max_age_days(tier))
        objects = self.storage.list_objects(tier_prefix(tier))

        result = {'deleted': 0, 'errors': 0}

        for obj in objects:
            last_modified = obj.get('last_modified')
            if last_modified is None or last_modified >= cutoff:
                continue

            try:
                self.storage.delete(obj['key'])
                result['deleted'] += 1
                logger.debug(f"Deleted expired backup: {obj['key']} (tier={tier}, modified={last_modified.isoformat()})")
            except StorageError as e:
                result['errors'] += 1
                logger.error(f"Failed to delete expired backup {obj['key']}: {e}")

        return result
