"""Build identity, computed once at startup and passed where needed."""

import os
import re
from dataclasses import dataclass
from importlib import metadata

DISTRIBUTION = "hetzner-blackbsd"
SHORT_COMMIT_LENGTH = 7

_DESCRIBE_RE = re.compile(r"^(?P<base>.+?)(?:-(?P<count>\d+)-g(?P<sha>[0-9a-f]+))?(?:-dirty)?$")


def short_commit(commit: str) -> str:
    return commit[:SHORT_COMMIT_LENGTH]


def parse_describe(version: str) -> tuple[str, str, str, bool]:
    """Split ``git describe --tags --dirty`` output into (base, count, sha, dirty)."""
    if not version:
        return "", "", "", False
    dirty = version.endswith("-dirty")
    match = _DESCRIBE_RE.match(version)
    if match is None:
        return version, "", "", dirty
    return match["base"], match["count"] or "", match["sha"] or "", dirty


def format_display_version(version: str, commit: str) -> str:
    """Render a version for humans.

    Examples:
        v1.2.3                        -> v1.2.3
        v1.2.3-4-gabc1234             -> v1.2.3-abc1234-4
        v1.2.3-dirty (commit abc...)  -> v1.2.3-abc1234-0
        ""                            -> dev
    """
    base, count, sha, dirty = parse_describe(version)
    base = base or "dev"
    if not dirty and not count:
        return base
    sha = sha or short_commit(commit)
    if not sha or sha == "none":
        return base
    return f"{base}-{sha}-{count or '0'}"


@dataclass(frozen=True)
class VersionInfo:
    version: str = "dev"
    commit: str = "none"
    build_date: str = "unknown"

    @classmethod
    def detect(cls) -> "VersionInfo":
        """Read the installed package version plus commit/date from the environment."""
        try:
            version = metadata.version(DISTRIBUTION)
        except metadata.PackageNotFoundError:
            version = "dev"
        return cls(
            version=os.environ.get("BLACKBSD_VERSION", version),
            commit=os.environ.get("BLACKBSD_COMMIT", "none"),
            build_date=os.environ.get("BLACKBSD_BUILD_DATE", "unknown"),
        )

    @property
    def display(self) -> str:
        return format_display_version(self.version, self.commit)

    def __str__(self) -> str:
        return self.display
