"""
Remote state reconciliation: compares upload candidates against the bucket.
"""
import json
from dataclasses import dataclass, field
from typing import List, MutableMapping

from botocore.exceptions import BotoCoreError, ClientError

from .asset_discovery import UploadCandidate, pending_candidates
from .error_handler import RemoteStateError
from .object_store import LIST_PAGE_SIZE, ObjectStore


@dataclass
class ReconcileResult:
    pages: int = 0
    objects_seen: int = 0
    matched: int = 0
    pending: List[UploadCandidate] = field(default_factory=list)


def parse_etag(quoted_hash: str) -> str:
    """S3 wraps ETags in an extra layer of double quotes."""
    try:
        value = json.loads(quoted_hash)
    except (TypeError, ValueError):
        return (quoted_hash or '').strip('"')
    return value if isinstance(value, str) else str(value)


def prepare_bucket(store: ObjectStore, logger) -> bool:
    """
    Create the target bucket unless it already exists.

    Returns:
        True when the bucket was created by this call
    """
    try:
        if store.bucket_name in store.list_buckets():
            logger.log(f"found S3 bucket {store.bucket_name}")
            return False

        store.create_bucket()
    except (ClientError, BotoCoreError) as e:
        raise RemoteStateError(
            f"failed to prepare S3 bucket {store.bucket_name}: {e}",
            original_error=e,
            context={"bucket_name": store.bucket_name}
        )

    logger.log(f"created S3 bucket {store.bucket_name}")
    return True


def reconcile_remote_state(
    store: ObjectStore,
    prefix: str,
    candidates: MutableMapping[str, UploadCandidate],
    logger,
    page_size: int = LIST_PAGE_SIZE
) -> ReconcileResult:
    """
    Mark candidates whose content already sits in the bucket.

    Walks every page of the prefix listing. A listed object whose key matches
    a candidate records its hash on that candidate; the candidate needs upload
    only if the hashes differ. Listed objects without a candidate are left
    alone.
    """
    result = ReconcileResult()
    token = None

    while True:
        range_start = result.pages * page_size
        logger.log(f"fetching S3 object metadata [{range_start}-{range_start + page_size}]")

        try:
            listing = store.list_objects(prefix, continuation_token=token, max_keys=page_size)
        except (ClientError, BotoCoreError) as e:
            raise RemoteStateError(
                f"failed to list s3://{store.bucket_name}/{prefix}: {e}",
                original_error=e,
                context={"bucket_name": store.bucket_name, "prefix": prefix, "page": result.pages}
            )
        result.pages += 1
        result.objects_seen += len(listing.entries)

        for entry in listing.entries:
            candidate = candidates.get(entry.key)
            if candidate is None:
                continue
            candidate.remote_hash = parse_etag(entry.quoted_hash)
            candidate.needs_upload = candidate.remote_hash != candidate.content_hash
            candidate.is_first_upload = False
            result.matched += 1

        if not listing.is_truncated:
            break
        if not listing.next_token:
            raise RemoteStateError(
                f"truncated listing of s3://{store.bucket_name}/{prefix} returned no continuation token"
            )
        token = listing.next_token

    result.pending = pending_candidates(candidates)
    for candidate in candidates.values():
        if not candidate.needs_upload:
            logger.verbose(f"skipping {candidate.name} [{candidate.brief_hash}]")

    logger.log(f"{len(result.pending)} assets need uploading")
    return result
