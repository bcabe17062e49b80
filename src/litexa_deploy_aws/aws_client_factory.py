"""
AWS session and client factory for deployment targets.
"""
import json
import logging
import os
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ProfileNotFound

from .error_handler import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_REGION = "us-east-1"
CREDENTIALS_FILE_NAME = "aws-config.json"


def get_aws_region() -> str:
    """Get AWS region from environment."""
    return (
        os.environ.get("AWS_REGION")
        or os.environ.get("AWS_DEFAULT_REGION")
        or DEFAULT_REGION
    )


def get_boto3_config(region: Optional[str] = None) -> Config:
    """Get standard boto3 configuration with SigV4 signing."""
    return Config(
        retries={'max_attempts': 3, 'mode': 'adaptive'},
        max_pool_connections=50,
        region_name=region or get_aws_region(),
        signature_version='v4'
    )


def _load_credentials_file(credentials_file: Path, deployment_name: str) -> dict:
    try:
        with open(credentials_file, 'r') as f:
            all_credentials = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to load {credentials_file}: {e}", original_error=e)

    credentials = all_credentials.get(deployment_name) if isinstance(all_credentials, dict) else None
    if not credentials:
        raise ConfigurationError(
            f"Failed to load {credentials_file}: No AWS credentials exist for the "
            f"`{deployment_name}` deployment target. See the litexa-deploy-aws readme for "
            f"details on your {CREDENTIALS_FILE_NAME}."
        )
    return credentials


def create_session(
    project_root: str,
    deployment_name: str,
    aws_profile: Optional[str] = None
) -> boto3.Session:
    """
    Build a boto3 session for a deployment target.

    Credentials come from ``<project_root>/aws-config.json`` when that file
    exists, otherwise from the named shared-config profile.

    Raises:
        ConfigurationError: If no usable credentials are found
    """
    credentials_file = Path(project_root) / CREDENTIALS_FILE_NAME
    if credentials_file.exists():
        credentials = _load_credentials_file(credentials_file, deployment_name)
        session = boto3.Session(
            aws_access_key_id=credentials.get('accessKeyId'),
            aws_secret_access_key=credentials.get('secretAccessKey'),
            aws_session_token=credentials.get('sessionToken'),
            region_name=credentials.get('region') or DEFAULT_REGION
        )
        logger.info(f"loaded AWS config from {credentials_file}")
        return session

    profile = aws_profile or 'default'
    failure = (
        f"Failed to load the AWS profile {profile}. You need to ensure that the aws-cli "
        "works with that profile before you can try again. Alternatively, you may want to "
        f"add a local authorization with a {CREDENTIALS_FILE_NAME} file."
    )
    try:
        session = boto3.Session(profile_name=profile)
        credentials = session.get_credentials()
    except ProfileNotFound as e:
        raise ConfigurationError(failure, original_error=e)

    if credentials is None:
        raise ConfigurationError(failure)

    if not session.region_name:
        session = boto3.Session(profile_name=profile, region_name=DEFAULT_REGION)

    logger.info(f"loaded AWS profile {profile}")
    return session


def get_aws_client(service_name: str, session: Optional[boto3.Session] = None, region: str = None):
    """Get AWS client with standard configuration."""
    session = session or boto3.Session()
    region = region or session.region_name or get_aws_region()
    return session.client(
        service_name,
        region_name=region,
        config=get_boto3_config(region)
    )
