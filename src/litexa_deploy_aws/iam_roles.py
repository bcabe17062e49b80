"""
IAM role reconciliation.

Brings a named role to a desired trust policy and an exact set of attached
managed policies, touching only what differs. The steps form an explicit
state machine so each transition can be exercised on its own.
"""
import json
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import unquote

from botocore.exceptions import ClientError

from .error_handler import RemoteStateError, RoleNotFoundError, RoleReconciliationError

FRESHNESS_WINDOW_MINUTES = 240
READY_INITIAL_DELAY_SECONDS = 10
READY_POLL_INTERVAL_SECONDS = 1
READY_MAX_ATTEMPTS = 120


def canonical_policy_json(document: Any) -> str:
    """
    Canonical JSON text for a policy document.

    Accepts a parsed document, JSON text, or the URL-encoded JSON text IAM
    returns, so local and remote documents compare as plain strings.
    """
    if isinstance(document, str):
        document = json.loads(unquote(document))
    return json.dumps(document, sort_keys=True, separators=(',', ':'))


@dataclass(frozen=True)
class ManagedPolicy:
    arn: str
    name: str = ""


@dataclass
class RoleInfo:
    arn: str
    trust_policy: str


class IAMRoleService:
    """The IAM calls role reconciliation needs, over a boto3 IAM client."""

    def __init__(self, client):
        self.client = client

    def get_role(self, name: str) -> RoleInfo:
        try:
            response = self.client.get_role(RoleName=name)
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == 'NoSuchEntity':
                raise RoleNotFoundError(f"IAM role {name} does not exist", original_error=e)
            raise
        role = response['Role']
        return RoleInfo(
            arn=role['Arn'],
            trust_policy=canonical_policy_json(role.get('AssumeRolePolicyDocument') or {})
        )

    def create_role(self, name: str, trust_policy: Dict[str, Any], description: str = "") -> str:
        response = self.client.create_role(
            RoleName=name,
            AssumeRolePolicyDocument=json.dumps(trust_policy),
            Description=description
        )
        return response['Role']['Arn']

    def update_trust_policy(self, name: str, trust_policy: Dict[str, Any]) -> None:
        self.client.update_assume_role_policy(
            RoleName=name,
            PolicyDocument=json.dumps(trust_policy)
        )

    def list_attached_policies(self, name: str) -> List[ManagedPolicy]:
        paginator = self.client.get_paginator('list_attached_role_policies')
        policies = []
        for page in paginator.paginate(RoleName=name):
            for policy in page.get('AttachedPolicies', []):
                policies.append(ManagedPolicy(arn=policy['PolicyArn'], name=policy.get('PolicyName', '')))
        return policies

    def attach_policy(self, name: str, policy_arn: str) -> None:
        self.client.attach_role_policy(RoleName=name, PolicyArn=policy_arn)

    def detach_policy(self, name: str, policy_arn: str) -> None:
        self.client.detach_role_policy(RoleName=name, PolicyArn=policy_arn)


@dataclass
class RoleDescriptor:
    """Desired state of one role plus what reconciliation learns about it."""
    name: str
    trust_policy: Dict[str, Any]
    policies: List[ManagedPolicy] = field(default_factory=list)
    description: str = ""
    current_arn: Optional[str] = None
    missing_policies: List[ManagedPolicy] = field(default_factory=list)
    extraneous_policies: List[ManagedPolicy] = field(default_factory=list)
    was_just_created: bool = False

    @property
    def timestamp_name(self) -> str:
        return f"ensureIAMRole-{self.name}"

    @property
    def artifact_name(self) -> str:
        return f"iamRole-{self.name}"


class RoleState(Enum):
    CHECK_CACHE = "check_cache"
    SKIP = "skip"
    RESOLVE = "resolve"
    CREATE = "create"
    FOUND = "found"
    UPDATE_TRUST = "update_trust"
    AUTHORIZE = "authorize"
    RECONCILE = "reconcile"
    AWAIT_READY = "await_ready"
    DONE = "done"


TRANSITIONS = {
    RoleState.CHECK_CACHE: {RoleState.SKIP, RoleState.RESOLVE},
    RoleState.RESOLVE: {RoleState.FOUND, RoleState.CREATE},
    RoleState.CREATE: {RoleState.RESOLVE},
    RoleState.FOUND: {RoleState.AUTHORIZE, RoleState.UPDATE_TRUST},
    RoleState.UPDATE_TRUST: {RoleState.AUTHORIZE},
    RoleState.AUTHORIZE: {RoleState.RECONCILE},
    RoleState.RECONCILE: {RoleState.AWAIT_READY, RoleState.DONE},
    RoleState.AWAIT_READY: {RoleState.DONE},
}

TERMINAL_STATES = {RoleState.SKIP, RoleState.DONE}


class RoleReconciler:
    """
    Runs one role through the reconciliation state machine.

    The cache, when given, lets a recently reconciled role be skipped for
    ``freshness_minutes``. Readiness polling only happens for a role this run
    created, and gives up after ``max_ready_attempts`` polls.
    """

    def __init__(
        self,
        service: IAMRoleService,
        artifacts,
        logger,
        cache=None,
        freshness_minutes: float = FRESHNESS_WINDOW_MINUTES,
        initial_delay: float = READY_INITIAL_DELAY_SECONDS,
        poll_interval: float = READY_POLL_INTERVAL_SECONDS,
        max_ready_attempts: int = READY_MAX_ATTEMPTS,
        sleep: Optional[Callable[[float], None]] = None
    ):
        self.service = service
        self.artifacts = artifacts
        self.logger = logger
        self.cache = cache
        self.freshness_minutes = freshness_minutes
        self.initial_delay = initial_delay
        self.poll_interval = poll_interval
        self.max_ready_attempts = max_ready_attempts
        self.sleep = sleep or time.sleep
        self.history: List[RoleState] = []
        self._found_role: Optional[RoleInfo] = None
        self._handlers = {
            RoleState.CHECK_CACHE: self._check_cache,
            RoleState.RESOLVE: self._resolve,
            RoleState.CREATE: self._create,
            RoleState.FOUND: self._found,
            RoleState.UPDATE_TRUST: self._update_trust,
            RoleState.AUTHORIZE: self._authorize,
            RoleState.RECONCILE: self._reconcile,
            RoleState.AWAIT_READY: self._await_ready,
        }

    def ensure(self, role: RoleDescriptor) -> str:
        """Reconcile the role and return its ARN."""
        self.history = []
        role.missing_policies = []
        role.extraneous_policies = []
        role.was_just_created = False

        try:
            state = RoleState.CHECK_CACHE
            self.history.append(state)
            while state not in TERMINAL_STATES:
                next_state = self._handlers[state](role)
                if next_state not in TRANSITIONS[state]:
                    raise RoleReconciliationError(
                        f"invalid transition {state.value} -> {next_state.value}",
                        role_name=role.name
                    )
                state = next_state
                self.history.append(state)

            if state == RoleState.SKIP:
                return self.artifacts.get(role.artifact_name)
            return self._done(role)
        except Exception as e:
            self.logger.error(e)
            raise RoleReconciliationError(
                f"Failed to fetch info for IAM role {role.name}",
                role_name=role.name,
                original_error=e
            ) from e

    def _check_cache(self, role: RoleDescriptor) -> RoleState:
        if (
            self.cache is not None
            and self.cache.is_fresher_than(role.timestamp_name, self.freshness_minutes)
            and self.artifacts.get(role.artifact_name)
        ):
            self.logger.log(f"skipping IAM role {role.name}")
            return RoleState.SKIP

        self.logger.log(f"ensuring IAM role {role.name}")
        return RoleState.RESOLVE

    def _resolve(self, role: RoleDescriptor) -> RoleState:
        try:
            self._found_role = self.service.get_role(role.name)
        except RoleNotFoundError:
            if role.was_just_created:
                raise
            return RoleState.CREATE
        except ClientError as e:
            raise RemoteStateError(f"failed to get IAM role {role.name}: {e}", original_error=e)
        role.current_arn = self._found_role.arn
        return RoleState.FOUND

    def _create(self, role: RoleDescriptor) -> RoleState:
        self.logger.log(f"creating IAM role {role.name}")
        self.service.create_role(role.name, role.trust_policy, role.description)
        role.was_just_created = True
        return RoleState.RESOLVE

    def _found(self, role: RoleDescriptor) -> RoleState:
        if self._found_role.trust_policy != canonical_policy_json(role.trust_policy):
            return RoleState.UPDATE_TRUST
        return RoleState.AUTHORIZE

    def _update_trust(self, role: RoleDescriptor) -> RoleState:
        self.logger.log(f"updating IAM role {role.name} assume role policy document")
        self.service.update_trust_policy(role.name, role.trust_policy)
        return RoleState.AUTHORIZE

    def _authorize(self, role: RoleDescriptor) -> RoleState:
        self.logger.log(f"pulling attached policies for IAM role {role.name}")
        attached = self.service.list_attached_policies(role.name)
        attached_arns = {policy.arn for policy in attached}
        desired_arns = {policy.arn for policy in role.policies}

        role.missing_policies = [p for p in role.policies if p.arn not in attached_arns]
        role.extraneous_policies = [p for p in attached if p.arn not in desired_arns]
        return RoleState.RECONCILE

    def _reconcile(self, role: RoleDescriptor) -> RoleState:
        calls = []
        for policy in role.missing_policies:
            self.logger.log(f"adding policy {policy.name or policy.arn}")
            calls.append((self.service.attach_policy, policy.arn))
        for policy in role.extraneous_policies:
            self.logger.log(f"removing policy {policy.name or policy.arn}")
            calls.append((self.service.detach_policy, policy.arn))

        if calls:
            self.logger.log("reconciling IAM role policy differences")
            with ThreadPoolExecutor(max_workers=len(calls)) as executor:
                futures = [executor.submit(call, role.name, arn) for call, arn in calls]
                wait(futures)
            for future in futures:
                future.result()

        if role.was_just_created:
            return RoleState.AWAIT_READY
        return RoleState.DONE

    def _await_ready(self, role: RoleDescriptor) -> RoleState:
        # A new role is not usable by other services right away
        self.sleep(self.initial_delay)
        for attempt in range(1, self.max_ready_attempts + 1):
            self.logger.log("waiting for IAM role to be ready")
            try:
                self.service.get_role(role.name)
                return RoleState.DONE
            except Exception as e:
                self.logger.verbose(f"IAM role {role.name} not ready (attempt {attempt}): {e}")
            if attempt < self.max_ready_attempts:
                self.sleep(self.poll_interval)

        raise RoleReconciliationError(
            f"IAM role {role.name} was not ready after {self.max_ready_attempts} attempts",
            role_name=role.name
        )

    def _done(self, role: RoleDescriptor) -> str:
        self.logger.log(f"IAM Role {role.name} ready")
        self.artifacts.save(role.artifact_name, role.current_arn)
        if self.cache is not None:
            self.cache.save_timestamp(role.timestamp_name)
        return role.current_arn


LAMBDA_ROLE_NAME = "litexa_handler_lambda"

LAMBDA_TRUST_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "lambda.amazonaws.com"},
            "Action": "sts:AssumeRole"
        }
    ]
}

LAMBDA_MANAGED_POLICIES = [
    ManagedPolicy('arn:aws:iam::aws:policy/service-role/AWSLambdaBasicExecutionRole', 'AWSLambdaBasicExecutionRole'),
    ManagedPolicy('arn:aws:iam::aws:policy/AmazonDynamoDBFullAccess', 'AmazonDynamoDBFullAccess'),
    ManagedPolicy('arn:aws:iam::aws:policy/CloudWatchFullAccess', 'CloudWatchFullAccess'),
]


def lambda_role_descriptor() -> RoleDescriptor:
    return RoleDescriptor(
        name=LAMBDA_ROLE_NAME,
        trust_policy=LAMBDA_TRUST_POLICY,
        policies=list(LAMBDA_MANAGED_POLICIES),
        description="A role for Litexa input handlers, generated by litexa-deploy-aws"
    )


def ensure_lambda_iam_role(service: IAMRoleService, artifacts, logger, cache=None, **reconciler_options) -> str:
    """Ensure the role Litexa skill handlers run as; returns its ARN."""
    reconciler = RoleReconciler(service, artifacts, logger, cache=cache, **reconciler_options)
    return reconciler.ensure(lambda_role_descriptor())
