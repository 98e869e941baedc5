from datetime import datetime
from pgkeeper import db


class KeyValueEntry(db.Model):
    """Small JSON record with optional expiry (lock, history, stats, ...)"""
    __tablename__ = 'kv_entries'

    key = db.Column(db.String(255), primary_key=True)
    value = db.Column(db.Text, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=True, index=True)  # UTC, null = never
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def __repr__(self):
        return f'<KeyValueEntry {self.key} expires_at={self.expires_at}>'
