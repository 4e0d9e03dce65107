"""
Local id -> Salesforce id translation table for a single run.

Only the orchestrator writes to the table, once per object type phase. Readers
(validator, mapper) get a read-only view.
"""

from types import MappingProxyType
from typing import Dict, Iterable, Iterator, Mapping, Optional, Tuple

from .exceptions import IdentifierConflictError


class IdentifierTable:
    """Write-once mapping. Absence of a key means not created yet, or failed."""

    def __init__(self):
        self._ids: Dict[str, str] = {}

    def set(self, local_id: str, remote_id: str) -> None:
        existing = self._ids.get(local_id)
        if existing is not None:
            if existing != remote_id:
                raise IdentifierConflictError(local_id, existing, remote_id)
            return
        self._ids[local_id] = remote_id

    def update(self, pairs: Iterable[Tuple[str, str]]) -> None:
        for local_id, remote_id in pairs:
            self.set(local_id, remote_id)

    def get(self, local_id: Optional[str]) -> Optional[str]:
        if not local_id:
            return None
        return self._ids.get(local_id)

    def view(self) -> Mapping[str, str]:
        return MappingProxyType(self._ids)

    def as_dict(self) -> Dict[str, str]:
        return dict(self._ids)

    def __contains__(self, local_id: object) -> bool:
        return local_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self) -> Iterator[str]:
        return iter(self._ids)
