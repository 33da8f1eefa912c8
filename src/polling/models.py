"""
Polling data structures
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass(frozen=True)
class UIDEvent:
    """One delivered card/tag reading"""
    uid: str
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    host: str = ""
    path: str = ""

    def to_dict(self) -> dict:
        return {
            "uid": self.uid,
            "observed_at": self.observed_at.isoformat(),
            "host": self.host,
            "path": self.path,
        }
