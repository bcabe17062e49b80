"""
Deployment configuration: reads a project's deployment settings into the
values the asset and role steps consume.
"""
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .error_handler import ConfigurationError
from .upload_scheduler import UploadParamRule, check_upload_param_rules

logger = logging.getLogger(__name__)


@dataclass
class AssetDeploymentTarget:
    """Everything the asset deployment needs to know about one target."""
    project_name: str
    variant: str
    deployment_name: str
    bucket_name: str
    languages: Dict[str, Any] = field(default_factory=dict)
    upload_param_rules: List[UploadParamRule] = field(default_factory=list)
    override_assets_root: Optional[str] = None

    @property
    def base_location(self) -> str:
        return f"{self.project_name}/{self.variant}"


@dataclass
class DeploymentConfig:
    project_root: str
    deployment_name: str
    options: Dict[str, Any]
    assets: AssetDeploymentTarget

    @property
    def aws_profile(self) -> Optional[str]:
        return self.options.get('awsProfile')


def resolve_bucket_name(options: Mapping[str, Any], deployment_name: str) -> str:
    """
    Pick the bucket from ``S3BucketName`` or ``s3Configuration.bucketName``.

    Raises:
        ConfigurationError: If neither setting is present
    """
    bucket_name = options.get('S3BucketName') or (options.get('s3Configuration') or {}).get('bucketName')
    if not bucket_name:
        raise ConfigurationError(
            "Found neither `S3BucketName` nor `s3Configuration.bucketName` in Litexa config for "
            f"deployment target '{deployment_name}'. Please use either setting to specify a "
            "bucket to create (if necessary) and deploy to."
        )
    return bucket_name


def parse_upload_param_rules(options: Mapping[str, Any]) -> List[UploadParamRule]:
    """Read ``s3Configuration.uploadParams`` into UploadParamRules."""
    raw_rules = (options.get('s3Configuration') or {}).get('uploadParams') or []
    if not isinstance(raw_rules, list):
        raise ConfigurationError("s3Configuration.uploadParams must be a list")

    rules = []
    for index, raw in enumerate(raw_rules):
        if not isinstance(raw, dict):
            raise ConfigurationError(f"s3Configuration.uploadParams[{index}] must be an object")

        params = raw.get('params') or {}
        if not isinstance(params, dict):
            raise ConfigurationError(f"s3Configuration.uploadParams[{index}].params must be an object")

        patterns = raw.get('filter')
        if isinstance(patterns, str):
            patterns = [patterns]
        if patterns is not None and not (
            isinstance(patterns, list) and all(isinstance(p, str) for p in patterns)
        ):
            raise ConfigurationError(f"s3Configuration.uploadParams[{index}].filter must be a list of globs")

        rules.append(UploadParamRule(params=params, filter=patterns))

    check_upload_param_rules(rules)
    return rules


def _resolve_language_roots(languages: Mapping[str, Any], project_root: str) -> Dict[str, Any]:
    resolved = {}
    for language, info in languages.items():
        resolved[language] = {}
        for category, assets in (info or {}).items():
            if isinstance(assets, dict) and 'root' in assets:
                assets = dict(assets)
                assets['root'] = os.path.join(project_root, assets['root'])
            resolved[language][category] = assets
    return resolved


def load_deployment_config(config_path: str, deployment_name: str) -> DeploymentConfig:
    """
    Load a project configuration file for one deployment target.

    Asset roots in ``languages`` are resolved relative to the file.

    Raises:
        ConfigurationError: If the file is unreadable or the target is missing
    """
    path = Path(config_path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            config = json.load(f)
    except OSError as e:
        raise ConfigurationError(f"Configuration file {config_path} not found", original_error=e)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in {config_path}: {e}", original_error=e)

    project_name = config.get('name')
    if not project_name:
        raise ConfigurationError(f"{config_path} does not name the project")

    deployments = config.get('deployments') or {}
    options = deployments.get(deployment_name)
    if options is None:
        raise ConfigurationError(
            f"No deployment target named '{deployment_name}' in {config_path}"
        )

    project_root = str(path.parent)
    assets = AssetDeploymentTarget(
        project_name=project_name,
        variant=options.get('variant') or config.get('variant') or deployment_name,
        deployment_name=deployment_name,
        bucket_name=resolve_bucket_name(options, deployment_name),
        languages=_resolve_language_roots(config.get('languages') or {}, project_root),
        upload_param_rules=parse_upload_param_rules(options),
        override_assets_root=options.get('overrideAssetsRoot')
    )
    logger.debug(f"loaded deployment target {deployment_name} from {config_path}")

    return DeploymentConfig(
        project_root=project_root,
        deployment_name=deployment_name,
        options=options,
        assets=assets
    )
