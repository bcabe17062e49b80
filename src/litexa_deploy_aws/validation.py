"""
Input validation for bucket names, object keys and upload settings.
"""
import re
from typing import Iterable, List, Optional

from wcmatch import glob

from .error_handler import InvalidConfigurationError, PathValidationError

# DNS-compatible bucket name: dot-separated labels of lowercase alphanumerics
# and hyphens, 3-63 characters overall, not shaped like an IPv4 address.
BUCKET_NAME_PATTERN = re.compile(
    r"\A(?=.{3,63}\Z)(?!(\d+\.)+\d+\Z)"
    r"(([a-z0-9]|[a-z0-9][a-z0-9\-]*[a-z0-9])\.)*"
    r"([a-z0-9]|[a-z0-9][a-z0-9\-]*[a-z0-9])\Z"
)

UNSAFE_PATH_CHARACTERS = re.compile(r"[^0-9a-zA-Z_\-./]")

# minimatch defaults plus matchBase: braces, extglobs and globstar on, dotfiles
# skipped unless named, `*` stays within one path segment
GLOB_FLAGS = glob.BRACE | glob.EXTGLOB | glob.GLOBSTAR | glob.MATCHBASE | glob.CASE | glob.FORCEUNIX

BUCKET_RULES_URL = "https://docs.aws.amazon.com/AmazonS3/latest/dev/BucketRestrictions.html"


def validate_bucket_name(bucket_name: str) -> None:
    """
    Validate an S3 bucket name against the DNS-safe naming rules.

    Raises:
        InvalidConfigurationError: If the name breaks the rules
    """
    if not isinstance(bucket_name, str) or not BUCKET_NAME_PATTERN.match(bucket_name):
        raise InvalidConfigurationError(
            f"S3 bucket name '{bucket_name}' does not follow the rules for bucket naming in "
            f"{BUCKET_RULES_URL}. Please rename your bucket in the Litexa config to follow "
            "these guidelines and try again.",
            context={"bucket_name": bucket_name}
        )


def validate_path_name(path: str) -> None:
    """
    Validate an S3 key or key prefix.

    Raises:
        PathValidationError: If the path holds a character outside [0-9a-zA-Z_-./]
    """
    if UNSAFE_PATH_CHARACTERS.search(path):
        raise PathValidationError(
            f"S3 upload failed, disallowed name: `{path}`",
            context={"path": path}
        )


def has_reserved_keys(params: Optional[dict], keys: Iterable[str]) -> List[str]:
    """Return the reserved keys present in params, in params order."""
    if not params or not keys:
        return []
    reserved = set(keys)
    return [key for key in params if key in reserved]


def matches_glob_patterns(file_name: str, glob_patterns: Optional[Iterable[str]]) -> bool:
    """
    Check a file name against glob patterns.

    Patterns without a slash are also tried against the last path segment, so
    ``*.js`` matches ``html/bundle.js``. ``*.{png,jpg}`` style braces expand,
    and wildcards never match a leading dot.
    """
    if not file_name or not glob_patterns:
        return False

    return any(glob.globmatch(file_name, pattern, flags=GLOB_FLAGS) for pattern in glob_patterns)
