"""Command line entry point for Litexa AWS deployment steps."""
import argparse
import sys
from pathlib import Path

from .artifacts import load_artifacts
from .asset_deployment import deploy_assets
from .aws_client_factory import create_session, get_aws_client
from .config import load_deployment_config
from .error_handler import (
    AssetDeploymentError,
    DeploymentError,
    RoleReconciliationError,
    get_user_friendly_message,
    handle_error,
)
from .iam_roles import IAMRoleService, ensure_lambda_iam_role
from .local_cache import load_cache
from .logging_config import DeploymentLogger, log_execution_time, set_deployment_context, setup_logging
from .object_store import ObjectStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="litexa-deploy-aws",
        description="Deploy Litexa skill assets and IAM roles to AWS"
    )
    parser.add_argument('--config', default='litexa.json', help='Path to the project deployment config')
    parser.add_argument('--target', default='development', help='Deployment target name')
    parser.add_argument('--deploy-root', help='Directory for artifacts and the local cache')
    parser.add_argument('--no-cache', action='store_true', help='Ignore the local freshness cache')
    parser.add_argument('--verbose', action='store_true', help='Log verbose output')
    parser.add_argument('--json-logs', action='store_true', help='Emit JSON log lines')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')
    subparsers.add_parser('assets', help='Upload changed assets to the S3 bucket')
    subparsers.add_parser('lambda-role', help='Ensure the Lambda handler IAM role')
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    # stdout carries only the command result
    service_logger = setup_logging(
        log_level='DEBUG' if args.verbose else 'INFO',
        enable_json=args.json_logs,
        stream=sys.stderr
    )
    set_deployment_context(service_logger, args.target)
    logger = DeploymentLogger(service_logger)

    try:
        config = load_deployment_config(args.config, args.target)
        deploy_root = args.deploy_root or str(Path(config.project_root) / '.deploy' / args.target)
        artifacts = load_artifacts(deploy_root, args.target)
        session = create_session(config.project_root, args.target, config.aws_profile)

        with log_execution_time(f"{args.command} step finished", logger):
            if args.command == 'assets':
                store = ObjectStore(get_aws_client('s3', session), config.assets.bucket_name)
                result = deploy_assets(config.assets, store, artifacts, logger)
                output = f"uploaded {result.uploaded} assets to {result.assets_root}"
            else:
                cache = load_cache(deploy_root, enabled=not args.no_cache)
                service = IAMRoleService(get_aws_client('iam', session))
                output = ensure_lambda_iam_role(service, artifacts, logger, cache=cache)
        print(output)
    except DeploymentError as e:
        # Step failures were logged by the step itself
        if not isinstance(e, (AssetDeploymentError, RoleReconciliationError)):
            handle_error(e)
        print(f"❌ {get_user_friendly_message(e)}", file=sys.stderr)
        return 1
    except Exception as e:
        error = handle_error(e, context={"command": args.command, "target": args.target})
        print(f"❌ {get_user_friendly_message(error)}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
