"""
Thin adapter over the S3 client used by the asset deployment steps.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

LIST_PAGE_SIZE = 1000


@dataclass
class ObjectEntry:
    """One listed object; quoted_hash is the raw ETag as S3 reports it."""
    key: str
    quoted_hash: str


@dataclass
class ObjectListing:
    """One page of a prefix listing."""
    entries: List[ObjectEntry] = field(default_factory=list)
    is_truncated: bool = False
    next_token: Optional[str] = None


class ObjectStore:
    """S3 operations scoped to one bucket."""

    def __init__(self, client, bucket_name: str, region: Optional[str] = None):
        self.client = client
        self.bucket_name = bucket_name
        self._region = region

    @property
    def region(self) -> str:
        if not self._region:
            self._region = self.client.meta.region_name or "us-east-1"
        return self._region

    @property
    def rest_root(self) -> str:
        """Public REST root URL of the bucket."""
        return f"https://s3.{self.region}.amazonaws.com/{self.bucket_name}"

    def list_buckets(self) -> List[str]:
        response = self.client.list_buckets()
        return [bucket['Name'] for bucket in response.get('Buckets', [])]

    def create_bucket(self) -> None:
        params: Dict[str, Any] = {'Bucket': self.bucket_name}
        # us-east-1 rejects an explicit location constraint
        if self.region != "us-east-1":
            params['CreateBucketConfiguration'] = {'LocationConstraint': self.region}
        self.client.create_bucket(**params)

    def list_objects(
        self,
        prefix: str,
        continuation_token: Optional[str] = None,
        max_keys: int = LIST_PAGE_SIZE
    ) -> ObjectListing:
        params: Dict[str, Any] = {
            'Bucket': self.bucket_name,
            'Prefix': prefix,
            'MaxKeys': max_keys
        }
        if continuation_token:
            params['ContinuationToken'] = continuation_token

        response = self.client.list_objects_v2(**params)
        entries = [
            ObjectEntry(key=obj['Key'], quoted_hash=obj.get('ETag', ''))
            for obj in response.get('Contents', [])
        ]
        return ObjectListing(
            entries=entries,
            is_truncated=bool(response.get('IsTruncated')),
            next_token=response.get('NextContinuationToken')
        )

    def put_object(self, key: str, body, content_type: str, extra_params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = dict(extra_params or {})
        params.update({
            'Bucket': self.bucket_name,
            'Key': key,
            'Body': body,
            'ContentType': content_type
        })
        return self.client.put_object(**params)
