"""Discovery path helpers.

Expands user-relative locations, resolves symlinks for duplicate detection,
applies the exclude list and maps encoded project folder names back to
filesystem paths. Everything here is side-effect free apart from stat calls.
"""
from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Iterable

logger = logging.getLogger("sessiondex.paths")

_SESSION_FILE_RE = re.compile(
    r"^([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})\.jsonl$",
    re.IGNORECASE,
)
_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_ENV_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")
_TEMP_PROJECT_MARKERS = ("-tmp-", "-private-var-folders", "-var-folders-")
_GLOB_SUFFIX_RE = re.compile(r"/\*+$")

MAX_SESSION_ID_LENGTH = 200


def _expand_env(value: str) -> str:
    def _sub(match: re.Match) -> str:
        name = match.group(1) or match.group(2)
        return os.environ.get(name, "")

    return _ENV_VAR_RE.sub(_sub, value)


def is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def expand_path(raw: str, allowed_bases: Iterable[Path] | None = None) -> Path:
    """Expand ``~``, ``$VAR`` and ``${VAR}`` and normalize the result.

    When ``allowed_bases`` is given the expanded path must live under one of
    them, otherwise ``ValueError`` is raised.
    """
    token = (raw or "").strip()
    if not token:
        raise ValueError("Path must not be empty")

    expanded = Path(os.path.normpath(os.path.expanduser(_expand_env(token))))
    if not expanded.is_absolute():
        expanded = Path(os.path.normpath(Path.cwd() / expanded))

    if allowed_bases is not None:
        bases = [Path(os.path.normpath(b)) for b in allowed_bases]
        if not any(is_within(expanded, base) for base in bases):
            raise ValueError(f"Path outside allowed locations: {raw}")
    return expanded


def resolve_symlinks(path: str | Path) -> Path:
    """Canonical location of ``path``; falls back to the expanded path when it does not exist."""
    expanded = expand_path(str(path))
    try:
        return expanded.resolve(strict=True)
    except (OSError, RuntimeError):
        return expanded


def should_exclude(path: str | Path, exclude_paths: Iterable[str]) -> bool:
    """True when ``path`` equals, or lives below, an entry of the exclude list.

    Entries ending in ``/*`` or ``/**`` exclude everything below their base.
    """
    candidate = str(path)
    for pattern in exclude_paths:
        if not pattern:
            continue
        try:
            excluded = str(expand_path(pattern))
        except ValueError:
            continue

        if candidate == excluded:
            return True
        if candidate.startswith(excluded + os.sep):
            return True
        if pattern.endswith("/*") or pattern.endswith("/**"):
            base = str(expand_path(_GLOB_SUFFIX_RE.sub("", pattern)))
            if candidate.startswith(base + os.sep):
                return True
    return False


def get_discovery_roots(
    primary: str,
    additional: Iterable[str] = (),
    exclude_paths: Iterable[str] = (),
) -> list[Path]:
    """Primary projects dir plus additional discovery paths, de-duplicated by real path.

    Additional entries that are missing, not directories, excluded or
    symlinks to an already listed root are skipped.
    """
    exclude_list = list(exclude_paths)
    roots: list[Path] = []
    seen: set[Path] = set()

    primary_path = expand_path(primary)
    if should_exclude(primary_path, exclude_list):
        logger.warning(f"Exclude list covers the primary projects directory {primary_path}; no sessions will be discovered there")
    seen.add(resolve_symlinks(primary_path))
    roots.append(primary_path)

    for raw in additional:
        if not raw:
            continue
        try:
            expanded = expand_path(raw)
        except ValueError as e:
            logger.warning(f"Ignoring discovery path {raw!r}: {e}")
            continue
        if not expanded.exists():
            logger.debug(f"Skipping non-existent discovery path: {expanded}")
            continue
        if not expanded.is_dir():
            logger.debug(f"Skipping non-directory discovery path: {expanded}")
            continue
        if should_exclude(expanded, exclude_list):
            logger.debug(f"Skipping excluded discovery path: {expanded}")
            continue
        resolved = resolve_symlinks(expanded)
        if resolved in seen:
            logger.debug(f"Skipping duplicate discovery path (symlink): {expanded} -> {resolved}")
            continue
        seen.add(resolved)
        roots.append(expanded)

    return roots


def is_temp_project_dir(name: str) -> bool:
    return any(marker in name for marker in _TEMP_PROJECT_MARKERS)


def session_id_from_filename(path: str | Path) -> str | None:
    match = _SESSION_FILE_RE.match(Path(path).name)
    if not match:
        return None
    return match.group(1).lower()


def validate_session_id(value: str) -> bool:
    if not value or len(value) > MAX_SESSION_ID_LENGTH:
        return False
    return bool(_SESSION_ID_RE.match(value))


def decode_project_dir(name: str) -> str:
    """Best-effort project path from an encoded project folder name."""
    if name.startswith("-Users-"):
        base, rest = "/Users", name[len("-Users-"):]
    elif name.startswith("-private-"):
        base, rest = "/private", name[len("-private-"):]
    else:
        return name.replace("-", "/")

    parts = [p for p in rest.split("-") if p]
    return str(Path(base, *parts))
