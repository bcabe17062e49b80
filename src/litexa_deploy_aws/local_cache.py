"""
Local cache of timestamps and hashes kept between deployment runs.
"""
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

CACHE_FILE_NAME = "local-cache.json"


class LocalCache:
    """Named timestamps and hashes, written to disk on every change."""

    def __init__(self, data: Dict[str, Any], filename: Path):
        self.data = data
        self.filename = Path(filename)
        self.data.setdefault('timestamps', {})
        self.data.setdefault('hashes', {})

    def save(self) -> None:
        self.filename.parent.mkdir(parents=True, exist_ok=True)
        with open(self.filename, 'w', encoding='utf-8') as f:
            json.dump(self.data, f, indent=2)

    def save_timestamp(self, name: str) -> None:
        if not name:
            raise ValueError("bad timestamp name given to local cache")
        self.data['timestamps'][name] = int(time.time() * 1000)
        self.save()

    def milliseconds_since(self, name: str) -> Optional[int]:
        if name not in self.data['timestamps']:
            return None
        return int(time.time() * 1000) - self.data['timestamps'][name]

    def is_fresher_than(self, name: str, minutes: float) -> bool:
        """True if the named timestamp exists and is younger than ``minutes``."""
        elapsed = self.milliseconds_since(name)
        if elapsed is None:
            return False
        return elapsed / 1000 / 60 < minutes

    def is_older_than(self, name: str, minutes: float) -> bool:
        elapsed = self.milliseconds_since(name)
        if elapsed is None:
            return False
        return elapsed / 1000 / 60 > minutes

    def timestamp_exists(self, name: str) -> bool:
        return name in self.data['timestamps']

    def store_hash(self, name: str, value: str) -> None:
        self.data['hashes'][name] = value
        self.save()

    def get_hash(self, name: str) -> Optional[str]:
        return self.data['hashes'].get(name)

    def hash_matches(self, name: str, value: str) -> bool:
        return self.data['hashes'].get(name) == value


def load_cache(deploy_root: str, enabled: bool = True) -> LocalCache:
    """
    Load the cache file from the deploy root.

    A missing or unreadable file starts an empty cache, as does running with
    caching disabled.
    """
    filename = Path(deploy_root) / CACHE_FILE_NAME
    data: Dict[str, Any] = {}

    if enabled:
        try:
            with open(filename, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.debug(f"starting with an empty local cache: {e}")
            data = {}
        if not isinstance(data, dict):
            data = {}

    return LocalCache(data, filename)
