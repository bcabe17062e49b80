"""
Asset deployment: drives discovery, remote reconciliation and uploads for one
deployment target.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .artifacts import ArtifactStore
from .asset_discovery import AssetDiscovery, UploadCandidate, compute_file_hash
from .config import AssetDeploymentTarget
from .error_handler import AssetDeploymentError
from .object_store import ObjectStore
from .remote_state import prepare_bucket, reconcile_remote_state
from .upload_scheduler import DEFAULT_UPLOAD_WIDTH, UploadScheduler, check_upload_param_rules
from .validation import validate_bucket_name, validate_path_name

ASSETS_ROOT_ARTIFACT = 'assets-root'
ICON_ASSETS_ARTIFACT = 'deployedIconAssets'
DEPRECATED_ARTIFACTS = ('required-assets',)


@dataclass
class AssetDeploymentResult:
    assets_root: str
    bucket_created: bool = False
    uploaded: int = 0
    candidates: List[UploadCandidate] = field(default_factory=list)
    icon_assets: Dict[str, Any] = field(default_factory=dict)


def deploy_assets(
    target: AssetDeploymentTarget,
    store: ObjectStore,
    artifacts: ArtifactStore,
    logger,
    hash_function=compute_file_hash,
    upload_width: int = DEFAULT_UPLOAD_WIDTH,
    stop_on_missing_category: bool = True
) -> AssetDeploymentResult:
    """
    Deploy a target's assets to its bucket.

    Configuration problems raise ConfigurationError before any request is
    made. Any later failure is logged in full and re-raised as
    AssetDeploymentError.
    """
    logger.log('deploying assets')
    start_time = time.time()

    validate_bucket_name(target.bucket_name)
    validate_path_name(target.base_location)
    check_upload_param_rules(target.upload_param_rules)

    try:
        rest_root = store.rest_root
        assets_root = target.override_assets_root or f"{rest_root}/{target.base_location}/"
        artifacts.save(ASSETS_ROOT_ARTIFACT, assets_root)

        bucket_created = prepare_bucket(store, logger)

        logger.log("scanning assets, preparing hashes")
        discovery = AssetDiscovery(
            target.base_location,
            rest_root,
            hash_function=hash_function,
            stop_on_missing_category=stop_on_missing_category
        )
        found = discovery.discover(target.languages)
        artifacts.save(ICON_ASSETS_ARTIFACT, found.icon_assets)
        for name in DEPRECATED_ARTIFACTS:
            artifacts.delete(name)
        logger.log(f"scanned {found.asset_count} assets in project")

        reconciled = reconcile_remote_state(store, target.base_location, found.candidates, logger)

        scheduler = UploadScheduler(store, logger, width=upload_width)
        uploaded = scheduler.upload_assets(reconciled.pending, target.upload_param_rules)
    except Exception as e:
        logger.error(e)
        raise AssetDeploymentError(
            original_error=e,
            context={"deployment_name": target.deployment_name, "bucket_name": target.bucket_name}
        ) from e

    delta_ms = int((time.time() - start_time) * 1000)
    logger.log(f"asset deployment complete in {delta_ms}ms")

    return AssetDeploymentResult(
        assets_root=assets_root,
        bucket_created=bucket_created,
        uploaded=uploaded,
        candidates=list(found.candidates.values()),
        icon_assets=found.icon_assets
    )
