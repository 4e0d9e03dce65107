"""
Describe metadata cache.

One cache object can be shared by engines working on different environments;
entries are keyed by (environment id, object type) and expire after a TTL
that is checked on every read.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from .models import ObjectSchema

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 600


class DescribeCache:
    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Tuple[str, str], Tuple[float, ObjectSchema]] = {}
        self._lock = threading.Lock()

    def get(self, environment_id: str, object_type: str,
            loader: Callable[[str], Dict[str, Any]]) -> ObjectSchema:
        """
        Return cached metadata, calling loader(object_type) on a miss or expiry.

        Loader errors propagate to the caller; nothing is cached for them.
        """
        key = (environment_id, object_type)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry and entry[0] > now:
                return entry[1]

        logger.debug(f"Describe cache miss for {object_type} ({environment_id})")
        schema = ObjectSchema.from_describe(object_type, loader(object_type))

        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, schema)
        return schema

    def peek(self, environment_id: str, object_type: str) -> Optional[ObjectSchema]:
        """Return an unexpired entry without loading."""
        with self._lock:
            entry = self._entries.get((environment_id, object_type))
            if entry and entry[0] > self._clock():
                return entry[1]
        return None

    def invalidate(self, environment_id: Optional[str] = None, object_type: Optional[str] = None) -> None:
        with self._lock:
            for key in list(self._entries):
                if environment_id is not None and key[0] != environment_id:
                    continue
                if object_type is not None and key[1] != object_type:
                    continue
                del self._entries[key]
