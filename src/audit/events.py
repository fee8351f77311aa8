"""Audit event models."""

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict


@dataclass(frozen=True)
class TransitionEvent:
    """Immutable record of one deployment state transition."""

    deployment_id: str
    from_state: str
    to_state: str
    reason: str = ""
    timestamp: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    previous_hash: str = ""
    event_hash: str = ""

    def compute_hash(self, previous_hash: str) -> str:
        """Compute the SHA-256 link of this event in the hash chain.

        hash = SHA-256(previous_hash + event_id + timestamp + deployment_id
                       + from_state + to_state + reason)
        """
        payload = (
            f"{previous_hash}{self.event_id}{self.timestamp.isoformat()}"
            f"{self.deployment_id}{self.from_state}{self.to_state}{self.reason}"
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "deployment_id": self.deployment_id,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "reason": self.reason,
            "event_hash": self.event_hash,
            "previous_hash": self.previous_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransitionEvent":
        return cls(
            event_id=data["event_id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            deployment_id=data["deployment_id"],
            from_state=data["from_state"],
            to_state=data["to_state"],
            reason=data.get("reason", ""),
            event_hash=data.get("event_hash", ""),
            previous_hash=data.get("previous_hash", ""),
        )
