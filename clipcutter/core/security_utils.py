"""
Security utilities for ClipCutter.
- Minimal environment for external tools
- Allow-list checks for user text placed into tool arguments
- Argument-vector enforcement (no shell strings)
- Filename sanitization
"""

import os
import re
import pathlib
import logging

from clipcutter.core.constants import (
    SAFE_PATH,
    ALLOWED_ENV_KEYS,
    SCRATCH_HOME_DIR,
    UNSAFE_FILENAME_CHARS,
    ErrorCode,
)
from clipcutter.core.error_codes import JobError

logger = logging.getLogger(__name__)


# ── Process environment ───────────────────────────────────────────────

def minimal_env(scratch_home: pathlib.Path | None = None,
                extra_paths: list[str] | None = None) -> dict[str, str]:
    """
    Build the environment handed to external tools.
    Only a restricted PATH and a scratch HOME; nothing is inherited from
    the user's environment.
    """
    home = scratch_home or SCRATCH_HOME_DIR
    home.mkdir(parents=True, exist_ok=True)

    path_parts = []
    for p in extra_paths or []:
        if p and p not in path_parts:
            path_parts.append(p)
    path_parts.extend(SAFE_PATH.split(os.pathsep))

    return {
        "PATH": os.pathsep.join(path_parts),
        "HOME": str(home),
    }


def check_env(env: dict[str, str]) -> dict[str, str]:
    """Reject environment keys outside the allowed set."""
    unknown = set(env) - ALLOWED_ENV_KEYS
    if unknown:
        raise ValueError(f"Environment keys not allowed: {sorted(unknown)}")
    return dict(env)


def check_argv(args) -> list[str]:
    """
    Arguments must be a list/tuple of strings. A single string would be
    split by a shell, which is never used.
    """
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")
    if any(not isinstance(a, str) for a in args):
        raise TypeError("Subprocess args must all be strings")
    if any("\x00" in a for a in args):
        raise ValueError("Subprocess args must not contain NUL bytes")
    return list(args)


# ── User text allow-lists ─────────────────────────────────────────────

def ensure_allowed_chars(value: str, allowed: frozenset, field: str) -> str:
    """
    Raise JobError(INVALID_ARGUMENT) unless every character of value is in
    the allow-list.
    """
    if not value:
        raise JobError(ErrorCode.INVALID_ARGUMENT, f"{field} is empty")
    bad = sorted({c for c in value if c not in allowed})
    if bad:
        raise JobError(ErrorCode.INVALID_ARGUMENT,
                       f"{field} contains disallowed characters: {''.join(bad)!r}")
    return value


# ── Filename / path safety ────────────────────────────────────────────

def sanitize_filename_part(text: str, max_len: int = 80) -> str:
    """Make a fragment safe for use inside an output file name."""
    if not text:
        return ""
    safe = re.sub(UNSAFE_FILENAME_CHARS, '-', text)
    safe = safe.replace('..', '')
    safe = re.sub(r'\s+', '_', safe).strip('._-')
    return safe[:max_len]


def is_within(root: pathlib.Path, candidate: pathlib.Path) -> bool:
    """True if candidate resolves inside root."""
    try:
        real_root = root.resolve(strict=False)
        real_candidate = candidate.resolve(strict=False)
    except OSError:
        return False
    return real_candidate == real_root or real_root in real_candidate.parents
