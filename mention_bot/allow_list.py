"""
Allow/deny list of account handles.

Modes:
    allow  only listed (and enabled) handles get replies
    deny   listed handles never get replies, everyone else does

Handles are compared case-insensitively without the leading @. Whether the
list applies at all is a BotConfig switch checked by the scheduler.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Union

logger = logging.getLogger(__name__)


@dataclass
class AllowListEntry:
    handle: str
    enabled: bool = True


def _normalize(handle: str) -> str:
    return handle.strip().lstrip("@").lower()


class AllowList:
    def __init__(self, entries: Iterable[Union[str, AllowListEntry]] = ()) -> None:
        self._entries: dict[str, AllowListEntry] = {}
        for entry in entries:
            self.add(entry)

    def add(self, entry: Union[str, AllowListEntry]) -> None:
        if isinstance(entry, str):
            entry = AllowListEntry(handle=entry)
        key = _normalize(entry.handle)
        if key:
            self._entries[key] = AllowListEntry(handle=key, enabled=entry.enabled)

    def remove(self, handle: str) -> bool:
        return self._entries.pop(_normalize(handle), None) is not None

    def handles(self) -> list[str]:
        return sorted(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def is_allowed(self, handle: str, mode: str = "allow") -> bool:
        """
        Decide whether handle may receive a reply.

        A disabled entry counts as listed but never allowed, in either mode.
        """
        entry = self._entries.get(_normalize(handle))
        if entry is None:
            return mode == "deny"
        return entry.enabled and mode == "allow"
