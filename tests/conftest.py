"""
Shared fixtures: recording logger, in-memory S3 and IAM fakes, asset trees.
"""
import hashlib
import json
import os
import threading
import time

import pytest

from litexa_deploy_aws.asset_discovery import clear_hash_cache
from litexa_deploy_aws.error_handler import RoleNotFoundError
from litexa_deploy_aws.iam_roles import ManagedPolicy, RoleInfo, canonical_policy_json
from litexa_deploy_aws.object_store import ObjectEntry, ObjectListing


class RecordingLogger:
    """Logger capability that keeps every message for assertions."""

    def __init__(self):
        self.messages = []

    def log(self, message, **fields):
        self.messages.append(('log', message))

    def verbose(self, message, **fields):
        self.messages.append(('verbose', message))

    def warning(self, message, **fields):
        self.messages.append(('warning', message))

    def error(self, error, **fields):
        self.messages.append(('error', str(error)))

    def lines(self, level=None):
        return [message for lvl, message in self.messages if level is None or lvl == level]


class FakeObjectStore:
    """In-memory stand-in for ObjectStore that counts calls."""

    def __init__(self, bucket_name="my-bucket", region="us-west-2", buckets=None, upload_delay=0.0):
        self.bucket_name = bucket_name
        self.region = region
        self.buckets = list(buckets or [])
        self.objects = {}
        self.upload_delay = upload_delay
        self.fail_keys = set()
        self.create_bucket_calls = 0
        self.list_calls = []
        self.put_calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    @property
    def rest_root(self):
        return f"https://s3.{self.region}.amazonaws.com/{self.bucket_name}"

    def list_buckets(self):
        return list(self.buckets)

    def create_bucket(self):
        self.create_bucket_calls += 1
        self.buckets.append(self.bucket_name)

    def list_objects(self, prefix, continuation_token=None, max_keys=1000):
        self.list_calls.append((prefix, continuation_token, max_keys))
        keys = sorted(key for key in self.objects if key.startswith(prefix))
        start = int(continuation_token) if continuation_token else 0
        page = keys[start:start + max_keys]
        truncated = start + max_keys < len(keys)
        return ObjectListing(
            entries=[ObjectEntry(key=key, quoted_hash=self.objects[key]['ETag']) for key in page],
            is_truncated=truncated,
            next_token=str(start + max_keys) if truncated else None
        )

    def put_object(self, key, body, content_type, extra_params=None):
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.upload_delay:
                time.sleep(self.upload_delay)
            if key in self.fail_keys:
                raise IOError(f"simulated failure for {key}")
            data = body.read()
            with self._lock:
                self.put_calls.append({'key': key, 'content_type': content_type, 'params': dict(extra_params or {})})
                self.objects[key] = {
                    'ETag': json.dumps(hashlib.md5(data).hexdigest()),
                    'ContentType': content_type
                }
        finally:
            with self._lock:
                self.in_flight -= 1

    def seed(self, key, data):
        self.objects[key] = {'ETag': json.dumps(hashlib.md5(data).hexdigest())}


class FakeRoleService:
    """In-memory stand-in for IAMRoleService."""

    def __init__(self):
        self.roles = {}
        self.calls = []
        self.unready_polls = 0
        self.get_role_error = None
        self._policies_listed = False

    def _record(self, name, *args):
        self.calls.append((name,) + args)

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)

    def add_role(self, name, trust_policy, policies=()):
        self.roles[name] = {
            'arn': f"arn:aws:iam::123456789012:role/{name}",
            'trust': trust_policy,
            'policies': {policy.arn: policy for policy in policies},
        }

    def get_role(self, name):
        self._record('get_role', name)
        if self.get_role_error is not None:
            raise self.get_role_error
        if name not in self.roles:
            raise RoleNotFoundError(f"IAM role {name} does not exist")
        if self.unready_polls and self._policies_listed:
            self.unready_polls -= 1
            raise RuntimeError("role not visible yet")
        role = self.roles[name]
        return RoleInfo(arn=role['arn'], trust_policy=canonical_policy_json(role['trust']))

    def create_role(self, name, trust_policy, description=""):
        self._record('create_role', name)
        self.add_role(name, trust_policy)
        return self.roles[name]['arn']

    def update_trust_policy(self, name, trust_policy):
        self._record('update_trust_policy', name)
        self.roles[name]['trust'] = trust_policy

    def list_attached_policies(self, name):
        self._record('list_attached_policies', name)
        self._policies_listed = True
        return list(self.roles[name]['policies'].values())

    def attach_policy(self, name, policy_arn):
        self._record('attach_policy', name, policy_arn)
        self.roles[name]['policies'][policy_arn] = ManagedPolicy(policy_arn, policy_arn.rsplit('/', 1)[-1])

    def detach_policy(self, name, policy_arn):
        self._record('detach_policy', name, policy_arn)
        del self.roles[name]['policies'][policy_arn]


class DictArtifacts:
    """Artifact store kept in memory."""

    def __init__(self):
        self.values = {}

    def save(self, name, value):
        self.values[name] = value

    def get(self, name, default=None):
        return self.values.get(name, default)

    def delete(self, name):
        self.values.pop(name, None)


def write_files(root, files):
    """Create files (name -> bytes) under root; returns root as str."""
    for name, data in files.items():
        path = os.path.join(str(root), name)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'wb') as f:
            f.write(data)
    return str(root)


def md5_of(data):
    return hashlib.md5(data).hexdigest()


@pytest.fixture(autouse=True)
def _fresh_hash_cache():
    clear_hash_cache()
    yield
    clear_hash_cache()


@pytest.fixture
def recording_logger():
    return RecordingLogger()


@pytest.fixture
def fake_store():
    return FakeObjectStore()


@pytest.fixture
def fake_roles():
    return FakeRoleService()


@pytest.fixture
def artifacts():
    return DictArtifacts()


@pytest.fixture
def aws_credentials(monkeypatch):
    """Dummy credentials so moto never reaches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')
    monkeypatch.setenv('MOTO_IAM_LOAD_MANAGED_POLICIES', 'true')
    monkeypatch.delenv('AWS_PROFILE', raising=False)


@pytest.fixture
def language_tree(tmp_path):
    """
    The three-asset project: one shared default duplicated into two languages
    and one per-language override.
    """
    default_root = write_files(tmp_path / 'assets' / 'default', {
        'shared.png': b'shared-image',
        'intro.mp3': b'default-intro',
    })
    en_root = write_files(tmp_path / 'assets' / 'en-US', {
        'intro.mp3': b'english-intro',
    })
    de_root = write_files(tmp_path / 'assets' / 'de-DE', {})
    empty = {'root': str(tmp_path / 'converted'), 'files': []}
    return {
        'default': {
            'assets': {'root': default_root, 'files': ['shared.png', 'intro.mp3']},
            'convertedAssets': dict(empty),
        },
        'en-US': {
            'assets': {'root': en_root, 'files': ['intro.mp3']},
            'convertedAssets': dict(empty),
        },
        'de-DE': {
            'assets': {'root': de_root, 'files': []},
            'convertedAssets': dict(empty),
        },
    }
