"""
On-disk cache for CRS searches.

Scoring thousands of CRS candidates is the slow part of a run, and the
result depends only on the coordinates and the search settings. Each
entry is one JSON file ``<key>.json`` holding ``{"meta": ..., "payload": ...}``
where the key is a SHA-256 digest of the operation and its parameters.
Entries older than ``max_age_days`` are ignored.
"""

import hashlib
import json
import os
import time
from collections import Counter

import numpy as np

from gridder import config
from gridder.crs.inference import CRSSearchResult
from gridder.logging_config import get_pipeline_logger

log = get_pipeline_logger(__name__)

SECONDS_PER_DAY = 86400


def coordinates_hash(points):
    """Stable digest of a point set's CRS and coordinates."""
    h = hashlib.sha256(points.crs.encode())
    for axis in (points.x, points.y):
        h.update(np.ascontiguousarray(axis, dtype="float64").tobytes())
    return h.hexdigest()[:16]


class CacheManager:
    """JSON file cache keyed by operation name and parameters.

    Parameters
    ----------
    cache_dir : str, optional
        Defaults to config.CACHE_DIR; created if missing.
    max_age_days : float, optional
        Defaults to config.CACHE_MAX_AGE_DAYS.
    """

    def __init__(self, cache_dir=None, max_age_days=None):
        self.cache_dir = cache_dir or config.CACHE_DIR
        self.max_age_days = (config.CACHE_MAX_AGE_DAYS
                             if max_age_days is None else max_age_days)
        os.makedirs(self.cache_dir, exist_ok=True)
        self._stats = Counter(hits=0, misses=0)

    @staticmethod
    def make_key(operation, **params):
        """Digest of the operation and its parameters; order-independent."""
        canonical = json.dumps({"operation": operation, "params": params},
                               sort_keys=True, default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()[:16]

    def _path(self, key):
        return os.path.join(self.cache_dir, f"{key}.json")

    def _read(self, path):
        with open(path) as f:
            return json.load(f)

    def _is_fresh(self, meta):
        age_days = (time.time() - meta.get("created", 0)) / SECONDS_PER_DAY
        return age_days <= self.max_age_days

    def get(self, operation, **params):
        """Cached payload, or None when absent or expired."""
        key = self.make_key(operation, **params)
        path = self._path(key)
        if not os.path.exists(path):
            self._stats["misses"] += 1
            return None

        entry = self._read(path)
        if not self._is_fresh(entry["meta"]):
            log.debug("Cache entry %s for %s expired", key, operation)
            self._stats["misses"] += 1
            return None

        self._stats["hits"] += 1
        log.debug("Cache hit: %s [%s]", operation, key)
        return entry["payload"]

    def put(self, operation, payload, **params):
        """Store a JSON-serializable payload. Returns the entry key."""
        key = self.make_key(operation, **params)
        entry = {
            "meta": {
                "operation": operation,
                "params": {k: str(v) for k, v in params.items()},
                "created": time.time(),
            },
            "payload": payload,
        }
        # Write then rename so a reader never sees a half-written entry.
        tmp = self._path(key) + ".tmp"
        with open(tmp, "w") as f:
            json.dump(entry, f)
        os.replace(tmp, self._path(key))
        log.debug("Cached %s [%s]", operation, key)
        return key

    def entries(self):
        """(key, meta) for every stored entry."""
        out = []
        for fname in sorted(os.listdir(self.cache_dir)):
            if fname.endswith(".json"):
                meta = self._read(os.path.join(self.cache_dir, fname))["meta"]
                out.append((fname[:-len(".json")], meta))
        return out

    def invalidate(self, operation=None):
        """Delete entries of ``operation`` (all entries when None)."""
        removed = 0
        for key, meta in self.entries():
            if operation is None or meta.get("operation") == operation:
                os.remove(self._path(key))
                removed += 1
        log.info("Invalidated %d cache entries", removed)
        return removed

    def get_stats(self):
        hits, misses = self._stats["hits"], self._stats["misses"]
        lookups = hits + misses
        return {
            "hits": hits,
            "misses": misses,
            "hit_rate_pct": round(100.0 * hits / lookups, 1) if lookups else 0.0,
        }


def cached_crs_search(cache, compute_fn, **params):
    """Return a cached CRSSearchResult, or compute and store it.

    ``cache=None`` disables caching. ``params`` identify the search (point
    digest, candidate list, scoring settings).
    """
    if cache is not None:
        records = cache.get("crs_search", **params)
        if records is not None:
            return CRSSearchResult.from_records(records)

    result = compute_fn()
    if cache is not None:
        cache.put("crs_search", result.to_records(), **params)
    return result
