"""Blue-Green Deployment — Environment Registry.

Owns the single piece of global truth in a blue-green setup: which
label is live. Reads never observe a half-finished swap; the active
label flips in memory only after the router and the store accepted it.
"""

import dataclasses
import logging
import threading
from typing import Any, Dict, Optional

from .config import EnvironmentLabel
from .exceptions import RegistryNotInitializedError, RoutingError, SwapConflictError
from .models import Environment
from .platform import TrafficRouter
from .store import StateStore

logger = logging.getLogger(__name__)


class EnvironmentRegistry:
    """Tracks which of the two environments is live and which is staging."""

    def __init__(
        self,
        router: TrafficRouter,
        store: StateStore,
        initial_active: Optional[EnvironmentLabel] = None,
        target_groups: Optional[Dict[EnvironmentLabel, str]] = None,
    ):
        self._router = router
        self._store = store
        self._lock = threading.RLock()
        self._swap_lock = threading.Lock()

        persisted = store.load_environments()
        self._environments: Dict[EnvironmentLabel, Environment] = {}
        for label in EnvironmentLabel:
            env = persisted.get(label) or Environment(label=label)
            if target_groups and target_groups.get(label):
                env.target_group_ref = target_groups[label]
            self._environments[label] = env

        self._active: Optional[EnvironmentLabel] = store.load_active_label()
        if self._active is None and initial_active is not None:
            self.initialize(initial_active)
        elif self._active is not None:
            logger.info("Registry loaded: %s is active", self._active.value)

    # ── Reads ────────────────────────────────────────────────────────

    @property
    def is_initialized(self) -> bool:
        return self._active is not None

    @property
    def active_label(self) -> EnvironmentLabel:
        with self._lock:
            if self._active is None:
                raise RegistryNotInitializedError("No active environment has been set")
            return self._active

    @property
    def swap_in_progress(self) -> bool:
        return self._swap_lock.locked()

    def get_active(self) -> Environment:
        """Return a copy of the environment currently serving traffic."""
        with self._lock:
            return dataclasses.replace(self._environments[self.active_label])

    def get_inactive(self) -> Environment:
        """Return a copy of the staging environment."""
        with self._lock:
            return dataclasses.replace(self._environments[self.active_label.other])

    def get(self, label: EnvironmentLabel) -> Environment:
        with self._lock:
            return dataclasses.replace(self._environments[label])

    # ── Writes ───────────────────────────────────────────────────────

    def initialize(self, label: EnvironmentLabel) -> Environment:
        """Set the first active label. No-op once a label is persisted."""
        with self._lock:
            if self._active is not None:
                return self.get_active()
            self._store.save_active_label(label)
            for env in self._environments.values():
                self._store.save_environment(env)
            self._active = label
            logger.info("Registry initialized: %s is active", label.value)
            return self.get_active()

    def update_environment(self, label: EnvironmentLabel, **changes: Any) -> Environment:
        """Update pool ref, target group ref or health status and persist it."""
        with self._lock:
            updated = dataclasses.replace(self._environments[label], **changes)
            self._store.save_environment(updated)
            self._environments[label] = updated
            return dataclasses.replace(updated)

    def swap(self) -> Environment:
        """Atomically flip which label is active.

        Either fully commits (router updated, label persisted, in-memory
        label flipped) or fully fails with the registry unchanged.

        Returns:
            The newly active environment.

        Raises:
            SwapConflictError: another swap is already in flight.
            RoutingError: the router or the store rejected the change.
        """
        if not self._swap_lock.acquire(blocking=False):
            logger.warning("Swap rejected: another swap is in flight")
            raise SwapConflictError()
        try:
            old_label = self.active_label
            new_label = old_label.other
            with self._lock:
                old_env = dataclasses.replace(self._environments[old_label])
                new_env = dataclasses.replace(self._environments[new_label])

            logger.info("Swapping traffic %s -> %s", old_label.value, new_label.value)
            try:
                self._router.set_active_target(new_env)
            except Exception as exc:
                raise RoutingError(
                    f"Router rejected switch to {new_label.value}: {exc}",
                    details={"from": old_label.value, "to": new_label.value},
                ) from exc

            try:
                self._store.save_active_label(new_label)
            except Exception as exc:
                logger.error("Persisting active label failed, reverting router: %s", exc)
                self._revert_router(old_env)
                raise RoutingError(
                    f"Could not persist active label {new_label.value}: {exc}",
                    details={"from": old_label.value, "to": new_label.value},
                ) from exc

            with self._lock:
                self._active = new_label
            logger.info("Swap committed: %s is active", new_label.value)
            return self.get_active()
        finally:
            self._swap_lock.release()

    def reconcile_routing(self) -> bool:
        """Re-point the router at the active environment if the two disagree.

        A crash between the router update and the store write of a swap
        leaves live traffic on the label the store does not call active.

        Returns:
            True if the router had to be corrected.
        """
        if not self._swap_lock.acquire(blocking=False):
            raise SwapConflictError()
        try:
            active = self.get_active()
            routed = self._router.current_target()
            if routed is None or routed == active.target_group_ref:
                return False
            logger.warning(
                "Router forwards to %s but %s is active; re-pointing",
                routed,
                active.label.value,
            )
            try:
                self._router.set_active_target(active)
            except Exception as exc:
                raise RoutingError(
                    f"Router rejected reconcile to {active.label.value}: {exc}",
                    details={"routed": routed, "active": active.label.value},
                ) from exc
            return True
        finally:
            self._swap_lock.release()

    def routed_target(self) -> Optional[str]:
        return self._router.current_target()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "active": self._active.value if self._active else None,
                "swap_in_progress": self.swap_in_progress,
                "environments": {
                    label.value: env.to_dict()
                    for label, env in self._environments.items()
                },
            }

    def _revert_router(self, old_env: Environment) -> None:
        try:
            self._router.set_active_target(old_env)
        except Exception:
            logger.critical(
                "Router revert to %s failed; routing and registry disagree",
                old_env.label.value,
                exc_info=True,
            )
            raise
