"""
Upload scheduling: partitions pending assets into sets and drains each set
with a bounded number of concurrent uploads.
"""
import mimetypes
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .asset_discovery import UploadCandidate
from .error_handler import ConfigurationError, UploadError
from .object_store import ObjectStore
from .validation import has_reserved_keys, matches_glob_patterns

RESERVED_PARAM_KEYS = ('Key', 'Body', 'ContentType', 'ACL')
MATCH_ALL = '*'
DEFAULT_UPLOAD_WIDTH = 5
DEFAULT_ACL = 'public-read'
DEFAULT_CONTENT_TYPE = 'application/octet-stream'


@dataclass
class UploadParamRule:
    """Per-object upload parameters for the assets a filter selects."""
    params: Dict[str, Any] = field(default_factory=dict)
    filter: Optional[List[str]] = None

    @property
    def is_default(self) -> bool:
        return not self.filter or MATCH_ALL in self.filter


@dataclass
class AssetSet:
    params: Optional[Dict[str, Any]] = None
    members: List[UploadCandidate] = field(default_factory=list)


def check_upload_param_rules(rules: Iterable[UploadParamRule]) -> None:
    """
    Raises:
        ConfigurationError: If any rule sets a key reserved for the deployer
    """
    for rule in rules:
        reserved = has_reserved_keys(rule.params, RESERVED_PARAM_KEYS)
        if reserved:
            raise ConfigurationError(
                "An upload params element in s3Configuration.uploadParams is using one or "
                f"more reserved keys ({', '.join(reserved)}). The 'Key', 'Body', "
                "'ContentType', and 'ACL' keys are all reserved by Litexa.",
                context={"reserved_keys": reserved}
            )


def create_asset_sets(
    pending: Iterable[UploadCandidate],
    rules: Optional[List[UploadParamRule]] = None
) -> List[AssetSet]:
    """
    Partition pending candidates into asset sets.

    Rules are applied in order and each candidate lands in the first set whose
    filter matches it. A rule with no filter, or one containing ``*``, only
    provides the params for whatever remains at the end.
    """
    remaining = list(pending)
    if not rules:
        return [AssetSet(params=None, members=remaining)]

    check_upload_param_rules(rules)

    asset_sets: List[AssetSet] = []
    default_params = None

    for rule in rules:
        if rule.is_default:
            default_params = rule.params
            continue

        claimed = [candidate for candidate in remaining if matches_glob_patterns(candidate.name, rule.filter)]
        if not claimed:
            continue
        claimed_keys = {candidate.key for candidate in claimed}
        remaining = [candidate for candidate in remaining if candidate.key not in claimed_keys]
        asset_sets.append(AssetSet(params=rule.params, members=claimed))

    if remaining:
        asset_sets.append(AssetSet(params=default_params, members=remaining))

    return asset_sets


def guess_content_type(path: str) -> str:
    content_type, _ = mimetypes.guess_type(path)
    return content_type or DEFAULT_CONTENT_TYPE


def upload_candidate(store: ObjectStore, candidate: UploadCandidate, params: Optional[Dict[str, Any]]) -> None:
    extra_params = {'ACL': DEFAULT_ACL}
    extra_params.update(params or {})
    with open(candidate.source_path, 'rb') as body:
        store.put_object(
            candidate.key,
            body,
            guess_content_type(candidate.source_path),
            extra_params
        )


class UploadScheduler:
    """
    Drains asset sets through batches of at most ``width`` concurrent uploads.

    Each batch is fully settled before the next one starts, and asset sets are
    processed one after another. A failed upload fails its batch, which stops
    the whole run; objects already uploaded stay in place.
    """

    def __init__(self, store: ObjectStore, logger, width: int = DEFAULT_UPLOAD_WIDTH):
        if width < 1:
            raise ConfigurationError(f"upload width must be at least 1, got {width}")
        self.store = store
        self.logger = logger
        self.width = width
        self.uploaded = 0
        self.total = 0

    def upload_assets(self, pending: List[UploadCandidate], rules: Optional[List[UploadParamRule]] = None) -> int:
        asset_sets = create_asset_sets(pending, rules)
        self.uploaded = 0
        self.total = sum(len(asset_set.members) for asset_set in asset_sets)

        for index, asset_set in enumerate(asset_sets):
            self.logger.verbose(f"Uploading asset set {index + 1} of {len(asset_sets)}")
            self.upload_asset_set(asset_set)
        return self.uploaded

    def upload_asset_set(self, asset_set: AssetSet) -> None:
        if not asset_set or not asset_set.members:
            return

        queue = deque(asset_set.members)
        with ThreadPoolExecutor(max_workers=self.width) as executor:
            while queue:
                batch = [queue.popleft() for _ in range(min(self.width, len(queue)))]
                self._upload_batch(executor, batch, asset_set.params)
                self.logger.log(f"{self.total - self.uploaded} assets remaining in queue")

    def _upload_batch(self, executor: ThreadPoolExecutor, batch: List[UploadCandidate], params) -> None:
        start_time = time.time()
        futures = {}
        for candidate in batch:
            self.logger.log(f"uploading {candidate.name} -> {candidate.key} [{candidate.brief_hash}]")
            futures[executor.submit(upload_candidate, self.store, candidate, params)] = candidate

        wait(futures)

        failed = None
        for future, candidate in futures.items():
            error = future.exception()
            if error is None:
                candidate.needs_upload = False
                candidate.is_first_upload = False
                candidate.remote_hash = candidate.content_hash
                self.uploaded += 1
            elif failed is None:
                failed = (candidate, error)

        if failed is not None:
            candidate, error = failed
            raise UploadError(
                f"failed to upload {candidate.source_path} to {candidate.key}: {error}",
                original_error=error,
                context={"key": candidate.key, "bucket_name": self.store.bucket_name}
            ) from error

        duration_ms = int((time.time() - start_time) * 1000)
        self.logger.log(f"segment uploaded in {duration_ms}ms")


def upload_assets(
    store: ObjectStore,
    pending: List[UploadCandidate],
    rules: Optional[List[UploadParamRule]],
    logger,
    width: int = DEFAULT_UPLOAD_WIDTH
) -> int:
    """Upload every pending candidate; returns the number of uploaded objects."""
    return UploadScheduler(store, logger, width=width).upload_assets(pending, rules)
