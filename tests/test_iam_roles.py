"""
Tests for iam_roles.py - role reconciliation state machine.
"""
import json
from unittest.mock import Mock
from urllib.parse import quote

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from conftest import DictArtifacts, FakeRoleService
from litexa_deploy_aws.error_handler import RoleNotFoundError, RoleReconciliationError
from litexa_deploy_aws.iam_roles import (
    LAMBDA_MANAGED_POLICIES,
    LAMBDA_ROLE_NAME,
    LAMBDA_TRUST_POLICY,
    TRANSITIONS,
    IAMRoleService,
    ManagedPolicy,
    RoleDescriptor,
    RoleReconciler,
    RoleState,
    canonical_policy_json,
    ensure_lambda_iam_role,
    lambda_role_descriptor,
)
from litexa_deploy_aws.local_cache import load_cache

OTHER_TRUST = {
    "Version": "2012-10-17",
    "Statement": [{"Effect": "Allow", "Principal": {"Service": "ec2.amazonaws.com"}, "Action": "sts:AssumeRole"}]
}


def _reconciler(service, logger, artifacts=None, cache=None, **kwargs):
    kwargs.setdefault('sleep', Mock())
    return RoleReconciler(service, artifacts or DictArtifacts(), logger, cache=cache, **kwargs)


@pytest.mark.unit
class TestCanonicalPolicyJson:

    def test_dict_and_encoded_text_agree(self):
        """A dict and its URL-encoded JSON canonicalise the same way."""
        encoded = quote(json.dumps(LAMBDA_TRUST_POLICY))
        assert canonical_policy_json(encoded) == canonical_policy_json(LAMBDA_TRUST_POLICY)

    def test_key_order_ignored(self):
        """Key order does not change the canonical form."""
        reordered = {"Statement": LAMBDA_TRUST_POLICY["Statement"], "Version": "2012-10-17"}
        assert canonical_policy_json(reordered) == canonical_policy_json(LAMBDA_TRUST_POLICY)

    def test_different_documents_differ(self):
        """Different documents have different canonical forms."""
        assert canonical_policy_json(OTHER_TRUST) != canonical_policy_json(LAMBDA_TRUST_POLICY)


@pytest.mark.unit
class TestRoleReconciler:

    def test_creates_missing_role(self, fake_roles, recording_logger, artifacts):
        """A missing role is created, given its policies and recorded."""
        sleep = Mock()
        reconciler = _reconciler(fake_roles, recording_logger, artifacts, sleep=sleep)

        arn = reconciler.ensure(lambda_role_descriptor())

        assert arn == f"arn:aws:iam::123456789012:role/{LAMBDA_ROLE_NAME}"
        assert fake_roles.count('create_role') == 1
        assert fake_roles.count('update_trust_policy') == 0
        assert fake_roles.count('attach_policy') == 3
        assert fake_roles.count('detach_policy') == 0
        assert fake_roles.calls[-1] == ('get_role', LAMBDA_ROLE_NAME)
        sleep.assert_called_once_with(10)
        assert reconciler.history == [
            RoleState.CHECK_CACHE, RoleState.RESOLVE, RoleState.CREATE, RoleState.RESOLVE,
            RoleState.FOUND, RoleState.AUTHORIZE, RoleState.RECONCILE, RoleState.AWAIT_READY,
            RoleState.DONE,
        ]
        assert artifacts.get(f"iamRole-{LAMBDA_ROLE_NAME}") == arn

    def test_second_run_makes_no_changes(self, fake_roles, recording_logger):
        """A converged role needs no write calls."""
        role = lambda_role_descriptor()
        _reconciler(fake_roles, recording_logger).ensure(role)
        fake_roles.calls.clear()
        recording_logger.messages.clear()

        reconciler = _reconciler(fake_roles, recording_logger)
        reconciler.ensure(lambda_role_descriptor())

        assert fake_roles.count('attach_policy') == 0
        assert fake_roles.count('detach_policy') == 0
        assert fake_roles.count('create_role') == 0
        assert RoleState.AWAIT_READY not in reconciler.history
        assert 'reconciling IAM role policy differences' not in recording_logger.lines('log')

    def test_trust_mismatch_updated(self, fake_roles, recording_logger):
        """A stale trust policy is replaced."""
        fake_roles.add_role(LAMBDA_ROLE_NAME, OTHER_TRUST, LAMBDA_MANAGED_POLICIES)

        reconciler = _reconciler(fake_roles, recording_logger)
        reconciler.ensure(lambda_role_descriptor())

        assert fake_roles.count('update_trust_policy') == 1
        assert RoleState.UPDATE_TRUST in reconciler.history
        assert fake_roles.roles[LAMBDA_ROLE_NAME]['trust'] == LAMBDA_TRUST_POLICY

    def test_policy_deltas_reconciled(self, fake_roles, recording_logger):
        """Missing policies are attached and extra ones detached."""
        extra = ManagedPolicy('arn:aws:iam::aws:policy/AdministratorAccess', 'AdministratorAccess')
        fake_roles.add_role(LAMBDA_ROLE_NAME, LAMBDA_TRUST_POLICY, [LAMBDA_MANAGED_POLICIES[0], extra])
        role = lambda_role_descriptor()

        _reconciler(fake_roles, recording_logger).ensure(role)

        assert [p.arn for p in role.missing_policies] == [p.arn for p in LAMBDA_MANAGED_POLICIES[1:]]
        assert role.extraneous_policies == [extra]
        assert ('detach_policy', LAMBDA_ROLE_NAME, extra.arn) in fake_roles.calls
        assert set(fake_roles.roles[LAMBDA_ROLE_NAME]['policies']) == {p.arn for p in LAMBDA_MANAGED_POLICIES}
        assert 'reconciling IAM role policy differences' in recording_logger.lines('log')

    def test_fresh_cache_skips(self, fake_roles, recording_logger, tmp_path):
        """A recent cache timestamp skips the service entirely."""
        cache = load_cache(str(tmp_path))
        artifacts = DictArtifacts()
        first = _reconciler(fake_roles, recording_logger, artifacts, cache).ensure(lambda_role_descriptor())
        fake_roles.calls.clear()

        reconciler = _reconciler(fake_roles, recording_logger, artifacts, cache)
        arn = reconciler.ensure(lambda_role_descriptor())

        assert arn == first
        assert fake_roles.calls == []
        assert reconciler.history == [RoleState.CHECK_CACHE, RoleState.SKIP]
        assert f'skipping IAM role {LAMBDA_ROLE_NAME}' in recording_logger.lines('log')

    def test_stale_cache_reconciles(self, fake_roles, recording_logger, tmp_path):
        """An old cache timestamp runs reconciliation again."""
        cache = load_cache(str(tmp_path))
        artifacts = DictArtifacts()
        _reconciler(fake_roles, recording_logger, artifacts, cache).ensure(lambda_role_descriptor())
        cache.data['timestamps'][f'ensureIAMRole-{LAMBDA_ROLE_NAME}'] -= 241 * 60 * 1000
        fake_roles.calls.clear()

        _reconciler(fake_roles, recording_logger, artifacts, cache).ensure(lambda_role_descriptor())

        assert fake_roles.count('get_role') == 1

    def test_readiness_polls_until_visible(self, fake_roles, recording_logger):
        """Readiness polling waits until the policies show up."""
        fake_roles.unready_polls = 3
        sleep = Mock()

        _reconciler(fake_roles, recording_logger, sleep=sleep).ensure(lambda_role_descriptor())

        assert [c.args[0] for c in sleep.call_args_list] == [10, 1, 1, 1]
        assert recording_logger.lines('log').count('waiting for IAM role to be ready') == 4

    def test_readiness_gives_up(self, fake_roles, recording_logger):
        """Readiness polling fails after its attempt limit."""
        fake_roles.unready_polls = 100

        with pytest.raises(RoleReconciliationError) as exc_info:
            _reconciler(fake_roles, recording_logger, max_ready_attempts=5).ensure(lambda_role_descriptor())

        assert exc_info.value.role_name == LAMBDA_ROLE_NAME
        assert 'not ready after 5 attempts' in str(exc_info.value.original_error)

    def test_unexpected_error_names_role(self, fake_roles, recording_logger):
        """Unexpected service errors name the role."""
        fake_roles.get_role_error = ClientError(
            {'Error': {'Code': 'AccessDenied', 'Message': 'denied'}}, 'GetRole'
        )

        with pytest.raises(RoleReconciliationError) as exc_info:
            _reconciler(fake_roles, recording_logger).ensure(lambda_role_descriptor())

        assert str(exc_info.value) == f'Failed to fetch info for IAM role {LAMBDA_ROLE_NAME}'
        assert fake_roles.count('create_role') == 0
        assert recording_logger.lines('error')

    def test_role_still_missing_after_create_fails(self, recording_logger):
        """A role that stays missing after creation fails reconciliation."""
        service = Mock()
        service.get_role.side_effect = RoleNotFoundError('missing')

        with pytest.raises(RoleReconciliationError):
            _reconciler(service, recording_logger).ensure(lambda_role_descriptor())

        service.create_role.assert_called_once()

    def test_transition_table_covers_handlers(self):
        """Every state in the transition table has a handler."""
        reconciler = _reconciler(FakeRoleService(), Mock())
        assert set(TRANSITIONS) == set(reconciler._handlers)


@pytest.mark.integration
class TestIAMRoleServiceWithMoto:

    @mock_aws
    def test_lambda_role_end_to_end(self, aws_credentials, recording_logger, tmp_path):
        """The Lambda role is created against IAM and its ARN saved."""
        client = boto3.client('iam', region_name='us-east-1')
        service = IAMRoleService(client)
        artifacts = DictArtifacts()
        sleep = Mock()

        arn = ensure_lambda_iam_role(service, artifacts, recording_logger, cache=load_cache(str(tmp_path)), sleep=sleep)

        assert arn.endswith(f'role/{LAMBDA_ROLE_NAME}')
        attached = client.list_attached_role_policies(RoleName=LAMBDA_ROLE_NAME)['AttachedPolicies']
        assert {p['PolicyArn'] for p in attached} == {p.arn for p in LAMBDA_MANAGED_POLICIES}
        sleep.assert_any_call(10)

    @mock_aws
    def test_get_role_not_found(self, aws_credentials):
        """A missing role raises RoleNotFoundError."""
        service = IAMRoleService(boto3.client('iam', region_name='us-east-1'))

        with pytest.raises(RoleNotFoundError):
            service.get_role('does-not-exist')

    @mock_aws
    def test_trust_policy_round_trip(self, aws_credentials):
        """The trust policy read back matches what was written."""
        service = IAMRoleService(boto3.client('iam', region_name='us-east-1'))
        service.create_role('round-trip', LAMBDA_TRUST_POLICY, 'test role')

        info = service.get_role('round-trip')

        assert info.trust_policy == canonical_policy_json(LAMBDA_TRUST_POLICY)

    @mock_aws
    def test_reconciler_converges_existing_role(self, aws_credentials, recording_logger):
        """An existing role with drifted policies is brought in line."""
        client = boto3.client('iam', region_name='us-east-1')
        client.create_role(RoleName='custom', AssumeRolePolicyDocument=json.dumps(OTHER_TRUST))
        stray = client.create_policy(
            PolicyName='stray',
            PolicyDocument=json.dumps({
                "Version": "2012-10-17",
                "Statement": [{"Effect": "Allow", "Action": "s3:ListBucket", "Resource": "*"}]
            })
        )['Policy']['Arn']
        client.attach_role_policy(RoleName='custom', PolicyArn=stray)
        role = RoleDescriptor(
            name='custom',
            trust_policy=LAMBDA_TRUST_POLICY,
            policies=[LAMBDA_MANAGED_POLICIES[0]]
        )

        _reconciler(IAMRoleService(client), recording_logger).ensure(role)

        attached = client.list_attached_role_policies(RoleName='custom')['AttachedPolicies']
        assert [p['PolicyArn'] for p in attached] == [LAMBDA_MANAGED_POLICIES[0].arn]
        service = IAMRoleService(client)
        assert service.get_role('custom').trust_policy == canonical_policy_json(LAMBDA_TRUST_POLICY)
