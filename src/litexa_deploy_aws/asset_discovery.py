"""
Asset discovery: turns per-language asset listings into upload candidates.
"""
import hashlib
import logging
import os
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from cachetools import LRUCache

from .validation import validate_path_name

logger = logging.getLogger(__name__)

ASSET_CATEGORIES = ('assets', 'convertedAssets')
DEFAULT_LANGUAGE = 'default'
ICON_FILE_NAMES = ('icon-108.png', 'icon-512.png')

# Default-language files get registered once per language, so hash each file once
file_hash_cache = LRUCache(maxsize=4096)
file_hash_cache_lock = threading.RLock()


def compute_file_hash(path: str, chunk_size: int = 1024 * 1024) -> str:
    """MD5 hex digest of a file, the same value S3 reports as a simple ETag."""
    stat = os.stat(path)
    cache_key = (os.path.abspath(path), stat.st_size, stat.st_mtime_ns)

    with file_hash_cache_lock:
        cached = file_hash_cache.get(cache_key)
    if cached is not None:
        return cached

    digest = hashlib.md5()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(chunk_size), b''):
            digest.update(chunk)
    result = digest.hexdigest()

    with file_hash_cache_lock:
        file_hash_cache[cache_key] = result
    return result


def clear_hash_cache() -> None:
    with file_hash_cache_lock:
        file_hash_cache.clear()


@dataclass
class UploadCandidate:
    """A local file considered for upload, with local and remote hash state."""
    key: str
    name: str
    source_path: str
    content_hash: str
    remote_hash: Optional[str] = None
    needs_upload: bool = True
    is_first_upload: bool = True

    @property
    def brief_hash(self) -> str:
        return self.content_hash[-8:]


@dataclass
class DiscoveryResult:
    candidates: "OrderedDict[str, UploadCandidate]" = field(default_factory=OrderedDict)
    icon_assets: Dict[str, Dict[str, Dict[str, str]]] = field(default_factory=dict)

    @property
    def asset_count(self) -> int:
        return len(self.candidates)


class AssetDiscovery:
    """
    Collects upload candidates for every language and asset category.

    Non-default languages receive a copy of every default-language file they
    do not override, so each language namespace in the bucket is complete.

    ``stop_on_missing_category`` keeps the long-standing behaviour where a
    language without an asset category ends discovery for all languages that
    follow it. Set it to False to skip only that category.
    """

    def __init__(
        self,
        base_location: str,
        rest_root: str,
        hash_function: Callable[[str], str] = compute_file_hash,
        stop_on_missing_category: bool = True
    ):
        self.base_location = base_location
        self.rest_root = rest_root
        self.hash_function = hash_function
        self.stop_on_missing_category = stop_on_missing_category

    def discover(self, languages: Mapping[str, Mapping[str, Any]]) -> DiscoveryResult:
        result = DiscoveryResult()
        default_info = languages.get(DEFAULT_LANGUAGE) or {}

        for language, language_info in languages.items():
            for category in ASSET_CATEGORIES:
                assets = (language_info or {}).get(category)
                if assets is None:
                    if self.stop_on_missing_category:
                        logger.debug(f"language {language} has no {category}, ending asset scan")
                        return result
                    continue

                files = list(assets.get('files') or [])
                for file_name in files:
                    self._register(result, assets['root'], file_name, language)

                if language == DEFAULT_LANGUAGE:
                    continue

                default_assets = default_info.get(category)
                if not default_assets:
                    continue
                for file_name in default_assets.get('files') or []:
                    if file_name not in files:
                        self._register(result, default_assets['root'], file_name, language)

        return result

    def _register(self, result: DiscoveryResult, file_dir: str, file_name: str, language: str) -> UploadCandidate:
        key = f"{self.base_location}/{language}/{file_name}"
        validate_path_name(key)

        source_path = os.path.join(file_dir, file_name)
        content_hash = self.hash_function(source_path)
        candidate = UploadCandidate(
            key=key,
            name=file_name,
            source_path=source_path,
            content_hash=content_hash
        )
        result.candidates[key] = candidate

        # Deployed icons back the manifest when it names no icon URIs itself
        if file_name in ICON_FILE_NAMES:
            result.icon_assets.setdefault(language, {})[file_name] = {
                'url': f"{self.rest_root}/{key}",
                'md5': content_hash
            }
        return candidate


def discover_assets(
    languages: Mapping[str, Mapping[str, Any]],
    base_location: str,
    rest_root: str,
    hash_function: Callable[[str], str] = compute_file_hash,
    stop_on_missing_category: bool = True
) -> DiscoveryResult:
    """Convenience wrapper around AssetDiscovery."""
    discovery = AssetDiscovery(
        base_location,
        rest_root,
        hash_function=hash_function,
        stop_on_missing_category=stop_on_missing_category
    )
    return discovery.discover(languages)


def pending_candidates(candidates: Mapping[str, UploadCandidate]) -> List[UploadCandidate]:
    """Candidates still flagged for upload, in discovery order."""
    return [candidate for candidate in candidates.values() if candidate.needs_upload]
