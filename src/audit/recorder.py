"""Append-only deployment audit trail with hash chain integrity."""

import dataclasses
import json
import logging
import os
import threading
from typing import Any, Dict, List, Optional, Tuple

from .config import AuditConfig, NotificationLevel
from .events import TransitionEvent
from .notifier import Notification, Notifier

logger = logging.getLogger(__name__)

_STATE_LEVELS = {
    "error": NotificationLevel.WARNING,
    "rolled_back": NotificationLevel.WARNING,
}


class AuditRecorder:
    """Thread-safe, append-only recorder of state transitions.

    Entries are frozen and hash-chained; accessors hand out tuples so no
    caller can mutate a prior entry. With ``log_path`` set, every entry
    is mirrored to a JSON Lines file and reloaded on construction, so the
    chain continues across restarts.
    """

    def __init__(self, config: Optional[AuditConfig] = None, notifier: Optional[Notifier] = None) -> None:
        self._config = config or AuditConfig()
        self._notifier = notifier or Notifier()
        self._events: List[TransitionEvent] = []
        self._last_hash: str = self._config.genesis_hash
        self._lock = threading.Lock()
        if self._config.log_path and os.path.exists(self._config.log_path):
            self._load(self._config.log_path)

    @property
    def config(self) -> AuditConfig:
        return self._config

    @property
    def notifier(self) -> Notifier:
        return self._notifier

    @property
    def events(self) -> Tuple[TransitionEvent, ...]:
        with self._lock:
            return tuple(self._events)

    @property
    def last_hash(self) -> str:
        with self._lock:
            return self._last_hash

    def record_transition(
        self,
        deployment_id: str,
        from_state: str,
        to_state: str,
        reason: str = "",
    ) -> Optional[TransitionEvent]:
        """Append a transition to the trail and notify operators if relevant.

        Returns:
            The recorded event, or None when auditing is disabled.
        """
        if not self._config.enabled:
            logger.debug("Audit recording disabled, skipping transition")
            return None

        with self._lock:
            draft = TransitionEvent(
                deployment_id=deployment_id,
                from_state=from_state,
                to_state=to_state,
                reason=reason,
                previous_hash=self._last_hash,
            )
            event = dataclasses.replace(draft, event_hash=draft.compute_hash(self._last_hash))
            self._events.append(event)
            self._last_hash = event.event_hash
            if self._config.log_path:
                self._append_line(event)

        logger.info(
            "Deployment %s: %s -> %s%s",
            deployment_id,
            from_state,
            to_state,
            f" ({reason})" if reason else "",
            extra={"from_state": from_state, "to_state": to_state, "reason": reason},
        )

        if to_state in self._config.notify_states:
            self._notifier.notify(Notification(
                title=f"Deployment {to_state}",
                message=f"{deployment_id}: {from_state} -> {to_state}" + (f" ({reason})" if reason else ""),
                level=_STATE_LEVELS.get(to_state, NotificationLevel.INFO),
                deployment_id=deployment_id,
            ))
        return event

    def alert(self, deployment_id: str, message: str, level: NotificationLevel = NotificationLevel.CRITICAL) -> None:
        """Send an operator notification that is not tied to a transition."""
        self._notifier.notify(Notification(
            title="Deployment alert",
            message=message,
            level=level,
            deployment_id=deployment_id,
        ))

    def for_deployment(self, deployment_id: str) -> List[TransitionEvent]:
        with self._lock:
            return [e for e in self._events if e.deployment_id == deployment_id]

    def verify_integrity(self) -> bool:
        """Return True if the hash chain is intact."""
        return not self.find_integrity_issues()

    def find_integrity_issues(self) -> List[Dict[str, Any]]:
        """Describe each broken link in the hash chain."""
        issues: List[Dict[str, Any]] = []
        previous_hash = self._config.genesis_hash
        for idx, event in enumerate(self.events):
            expected_hash = event.compute_hash(previous_hash)
            if event.event_hash != expected_hash:
                issues.append({
                    "index": idx,
                    "event_id": event.event_id,
                    "expected_hash": expected_hash,
                    "actual_hash": event.event_hash,
                    "type": "hash_mismatch",
                })
            if event.previous_hash != previous_hash:
                issues.append({
                    "index": idx,
                    "event_id": event.event_id,
                    "expected_previous": previous_hash,
                    "actual_previous": event.previous_hash,
                    "type": "chain_break",
                })
            previous_hash = event.event_hash
        return issues

    def export_jsonl(self, deployment_id: Optional[str] = None) -> str:
        """Export the trail (or one deployment's part of it) as JSON Lines."""
        events = self.for_deployment(deployment_id) if deployment_id else self.events
        return "\n".join(json.dumps(e.to_dict(), default=str) for e in events)

    def _append_line(self, event: TransitionEvent) -> None:
        with open(self._config.log_path, "a", encoding="utf-8") as fh:
            fh.write(json.dumps(event.to_dict(), default=str) + "\n")

    def _load(self, path: str) -> None:
        with open(path, encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if line:
                    self._events.append(TransitionEvent.from_dict(json.loads(line)))
        if self._events:
            self._last_hash = self._events[-1].event_hash
        logger.info("Loaded %d audit events from %s", len(self._events), path)
