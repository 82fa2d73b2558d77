# cache.py
from __future__ import annotations

import hashlib
import json
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .model import Service

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Build-level caching:
#   build_key = hash(
#       service name, dockerfile, build args,
#       contents of the build context (or the declared inputs, when given)
#   )
#
# The image tag is derived from the key ("src-<12 hex>"). If the registry
# already holds that tag, the build is skipped: identical inputs, identical
# image. Nothing is stored locally.
# ---------------------------------------------------------------------

DEFAULT_EXCLUDES = [
    ".git/**",
    ".relm/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
    "**/node_modules/**",
]

TAG_PREFIX = "src-"


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _files_in(path: Path) -> List[Path]:
    if path.is_file():
        return [path]
    return sorted(p for p in path.rglob("*") if p.is_file())


def _excluded(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    for g in globs:
        if rel_path.match(g):
            return True
        # Path.match anchors from the right; "x/**" should also cover x/a/b
        if g.endswith("/**") and (rel == g[:-3] or rel.startswith(g[:-3] + "/")):
            return True
        # fnmatch lets "*" cross "/", so "**/node_modules/**" matches at any depth
        if fnmatch(rel, g):
            return True
    return False


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _expand(repo_root: Path, pattern: str) -> List[Path]:
    """
    One input pattern as concrete paths: a file ("services/client/go.mod"),
    a directory ("services/client") or a glob ("proto/**/*.proto").
    """
    pattern = pattern.strip()
    if not pattern:
        return []
    direct = repo_root / pattern
    if direct.exists():
        return [direct]
    return sorted(repo_root.glob(pattern))


def hash_inputs(repo_root: Path, patterns: Iterable[str], *, excludes: List[str]) -> Tuple[str, Dict]:
    """
    Digest of an input set: relative path and content hash of every file,
    plus the patterns that matched nothing. Returns (digest, manifest).
    """
    root = repo_root.resolve()
    digests: Dict[str, str] = {}
    missing: List[str] = []
    for pattern in patterns:
        paths = _expand(root, pattern)
        if not paths:
            missing.append(pattern)
        for path in paths:
            for f in _files_in(path):
                rel = f.resolve().relative_to(root).as_posix()
                if rel not in digests and not _excluded(rel, excludes):
                    digests[rel] = _hash_file_contents(f)

    manifest = {"files": sorted(digests.items()), "missing": sorted(missing)}
    return _sha256_str(_json_dumps_stable(manifest)), manifest


def compute_build_key(
    service: Service,
    *,
    repo_root: str | Path = ".",
    excludes: Optional[List[str]] = None,
) -> Tuple[str, Dict]:
    """
    Returns (build_key, manifest) for a service. Inputs default to the whole
    build context.
    """
    root = Path(repo_root).resolve()
    exclude_globs = list(DEFAULT_EXCLUDES) + list(excludes or [])
    inputs = list(service.inputs) or [service.context]
    inputs_hash, inputs_manifest = hash_inputs(root, inputs, excludes=exclude_globs)

    payload = {
        "v": 1,  # bump when the hashing format changes
        "service": service.name,
        "dockerfile": service.dockerfile,
        "build_args": dict(service.build_args),
        "inputs_hash": inputs_hash,
    }
    key = _sha256_str(_json_dumps_stable(payload))
    return key, {"key": key, "payload": payload, "inputs": inputs_manifest}


def image_tag(build_key: str) -> str:
    return f"{TAG_PREFIX}{build_key[:12]}"
