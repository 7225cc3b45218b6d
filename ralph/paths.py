"""
Path safety checks.

Two independent lines of defense, both mandatory:
  1. validate_component() inspects the raw fragment before it is joined
     onto any base directory.
  2. validate_within_base() resolves the joined path (following symlinks)
     and makes sure it still lives under the base.
"""

from __future__ import annotations

import os
from pathlib import Path

from loguru import logger

from ralph.config_loader import ConfigurationError


class PathRejectedError(ConfigurationError):
    """Raised when an externally supplied path fragment is unsafe."""
    pass


def validate_component(path: str, context: str) -> None:
    """Reject absolute paths and any `..` token. Empty means "not provided"."""
    if not path:
        return

    if path.startswith(("/", os.sep)):
        logger.debug(f"[PATHS] Rejected absolute {context}: {path!r}")
        raise PathRejectedError(f"{context} must be a relative path, got absolute path")

    if ".." in path:
        logger.debug(f"[PATHS] Rejected traversal in {context}: {path!r}")
        raise PathRejectedError(f"{context} contains path traversal sequence (..)")


def validate_within_base(resolved_path: Path, base_dir: Path, context: str) -> None:
    """Reject `resolved_path` unless its canonical form is the canonical base or lies beneath it."""
    try:
        real_resolved = os.path.realpath(resolved_path)
        real_base = os.path.realpath(base_dir)
    except (OSError, ValueError) as e:
        raise PathRejectedError(f"Cannot resolve {context} path: {e}") from e

    if real_resolved != real_base and not real_resolved.startswith(real_base.rstrip(os.sep) + os.sep):
        logger.debug(f"[PATHS] {context} resolved to {real_resolved}, outside {real_base}")
        raise PathRejectedError(f"{context} resolves outside expected directory")
