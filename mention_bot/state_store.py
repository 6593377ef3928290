"""
Durable State Store - JSON file that makes polling idempotent across restarts.

Holds the last-seen mention id, the cached account id, the per-resource quota
reported by the remote API and the last poll time. Every setter rewrites the
whole file before returning (write-through), using a temp file and
os.replace so a crash mid-write never leaves a half-written state behind.

File format (camelCase keys):
    {
      "lastSeenMentionId": "1790000000000000003",
      "cachedAccountId": "1234567890",
      "perResourceRemaining": {"remote-read": 449, "remote-write": 300},
      "perResourceResetAt": {"remote-read": "2025-11-26T14:45:00Z"},
      "lastPollTime": "2025-11-26T14:30:00Z",
      "lastUpdated": "2025-11-26T14:30:01Z"
    }

Failure Modes:
    - Missing file: first run, defaults are used.
    - Corrupt or invalid file: renamed to <name>.corrupt.<timestamp>,
      defaults are used, a warning is logged. The process never crashes.
    - Write failure: logged at error level, in-memory state stays authoritative.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

# Quota ceilings restored by can_proceed() once a window has reset
DEFAULT_CEILINGS: dict[str, int] = {
    "remote-read": 450,
    "remote-write": 300,
    "llm-request": 100,
    "llm-tokens": 10_000,
}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PersistentState(BaseModel):
    """On-disk record of pipeline progress and observed quota."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    last_seen_mention_id: Optional[str] = None
    cached_account_id: Optional[str] = None
    per_resource_remaining: dict[str, int] = Field(default_factory=dict)
    per_resource_reset_at: dict[str, datetime] = Field(default_factory=dict)
    last_poll_time: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    @field_validator("last_poll_time", "last_updated")
    @classmethod
    def _utc_timestamp(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @field_validator("per_resource_reset_at")
    @classmethod
    def _utc_reset_times(cls, value: dict[str, datetime]) -> dict[str, datetime]:
        return {key: _as_utc(ts) for key, ts in value.items()}


class StateStore:
    """
    Write-through JSON persistence for PersistentState.

    All writes happen from the scheduler's single execution context, so no
    locking is needed here.
    """

    def __init__(self, path: Union[str, Path], ceilings: Optional[dict[str, int]] = None) -> None:
        """
        Initialize the store. Call load() before use.

        Args:
            path: Location of the JSON state file.
            ceilings: Per-resource quota restored after a window resets.
        """
        self.path = Path(path)
        self.ceilings = dict(DEFAULT_CEILINGS if ceilings is None else ceilings)
        self._state = self._default_state()

    def _default_state(self) -> PersistentState:
        return PersistentState(per_resource_remaining=dict(self.ceilings))

    # =========================================================================
    # Load / Save
    # =========================================================================

    def load(self) -> PersistentState:
        """
        Load state from disk, falling back to defaults on any problem.

        Returns:
            The loaded (or default) state.
        """
        if not self.path.exists():
            logger.info(f"No state file at {self.path}, starting fresh")
            self._state = self._default_state()
            return self._state

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            state = PersistentState.model_validate(raw)
        except (OSError, ValueError, PydanticValidationError) as e:
            backup = self._backup_corrupt_file()
            logger.warning(
                f"State file {self.path} is unreadable ({e.__class__.__name__}: {e}). "
                f"Using defaults. Backup: {backup}"
            )
            self._state = self._default_state()
            return self._state

        # Resources that were never observed start at their ceiling
        for resource, ceiling in self.ceilings.items():
            state.per_resource_remaining.setdefault(resource, ceiling)

        self._state = state
        logger.info(
            f"State loaded from {self.path} "
            f"(last mention: {state.last_seen_mention_id}, account: {state.cached_account_id})"
        )
        return self._state

    def _backup_corrupt_file(self) -> Optional[Path]:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        backup = self.path.with_name(f"{self.path.name}.corrupt.{timestamp}")
        try:
            os.replace(self.path, backup)
            return backup
        except OSError as e:
            logger.error(f"Could not back up corrupt state file {self.path}: {e}")
            return None

    def _save(self) -> None:
        self._state.last_updated = datetime.now(timezone.utc)
        payload = self._state.model_dump_json(by_alias=True, indent=2)
        temp_file = self.path.with_name(self.path.name + ".tmp")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_file, self.path)
        except OSError as e:
            logger.error(f"Failed to persist state to {self.path}: {e}")
            try:
                temp_file.unlink(missing_ok=True)
            except OSError:
                logger.debug(f"Could not remove temp file {temp_file}")

    @property
    def state(self) -> PersistentState:
        return self._state

    # =========================================================================
    # Getters
    # =========================================================================

    def get_last_seen_id(self) -> Optional[str]:
        return self._state.last_seen_mention_id

    def get_account_id(self) -> Optional[str]:
        return self._state.cached_account_id

    def get_remaining(self, resource: str) -> Optional[int]:
        """Remaining quota for resource, None when never observed and no ceiling is known."""
        return self._state.per_resource_remaining.get(resource, self.ceilings.get(resource))

    def get_reset_at(self, resource: str) -> Optional[datetime]:
        return self._state.per_resource_reset_at.get(resource)

    def get_last_poll_time(self) -> Optional[datetime]:
        return self._state.last_poll_time

    # =========================================================================
    # Setters (write-through)
    # =========================================================================

    def set_last_seen_id(self, mention_id: str) -> None:
        self._state.last_seen_mention_id = mention_id
        self._save()
        logger.debug(f"Last seen mention id -> {mention_id}")

    def set_account_id(self, account_id: str) -> None:
        self._state.cached_account_id = account_id
        self._save()

    def clear_account_id(self) -> None:
        self._state.cached_account_id = None
        self._save()

    def update_remaining(self, resource: str, remaining: int) -> None:
        self._state.per_resource_remaining[resource] = max(0, int(remaining))
        self._save()

    def update_reset_at(self, resource: str, reset_at: Union[str, datetime]) -> None:
        """
        Record when resource's quota window resets.

        Args:
            resource: Resource key (e.g. "remote-read").
            reset_at: ISO-8601 timestamp string or datetime.
        """
        if isinstance(reset_at, str):
            reset_at = datetime.fromisoformat(reset_at.replace("Z", "+00:00"))
        self._state.per_resource_reset_at[resource] = _as_utc(reset_at)
        self._save()

    def set_last_poll_time(self, when: Optional[datetime] = None) -> None:
        self._state.last_poll_time = _as_utc(when) or datetime.now(timezone.utc)
        self._save()

    # =========================================================================
    # Quota checks
    # =========================================================================

    def can_proceed(self, resource: str) -> bool:
        """
        Check whether the server-reported quota allows another call.

        When quota is exhausted but the reset time has passed, remaining is
        optimistically restored to the resource's ceiling and persisted.
        """
        remaining = self.get_remaining(resource)
        if remaining is None or remaining > 0:
            return True

        reset_at = self.get_reset_at(resource)
        if reset_at is not None and datetime.now(timezone.utc) < reset_at:
            logger.debug(f"{resource} exhausted until {reset_at.isoformat()}")
            return False

        ceiling = self.ceilings.get(resource)
        if ceiling is None:
            self._state.per_resource_remaining.pop(resource, None)
            self._save()
        else:
            self.update_remaining(resource, ceiling)
        logger.info(f"{resource} quota window reset, remaining restored to {ceiling}")
        return True

    def time_until_reset(self, resource: str) -> float:
        """Seconds until resource's window resets (0 if unknown or passed)."""
        reset_at = self.get_reset_at(resource)
        if reset_at is None:
            return 0.0
        return max(0.0, (reset_at - datetime.now(timezone.utc)).total_seconds())

    def summary(self) -> dict[str, Any]:
        """Operator-facing snapshot of the persisted state."""
        resources = sorted(set(self.ceilings) | set(self._state.per_resource_remaining))
        return {
            "state_file": str(self.path),
            "last_seen_mention_id": self._state.last_seen_mention_id,
            "cached_account_id": self._state.cached_account_id,
            "last_poll_time": _isoformat(self._state.last_poll_time),
            "last_updated": _isoformat(self._state.last_updated),
            "resources": {
                resource: {
                    "remaining": self.get_remaining(resource),
                    "ceiling": self.ceilings.get(resource),
                    "reset_at": _isoformat(self.get_reset_at(resource)),
                    "seconds_until_reset": round(self.time_until_reset(resource)),
                }
                for resource in resources
            },
        }


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
