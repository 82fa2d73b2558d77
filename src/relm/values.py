# values.py
from __future__ import annotations

import copy
import hashlib
import json
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml

from .errors import InvalidChartError, UnresolvedReferenceError

# ---------------------------------------------------------------------
# Precedence (lowest first):
#   chart defaults (values.yaml)
#   environment file (values-<env>.yaml)
#   environment-scoped settings (registry, cluster, issuer url)
#   invocation files (-f), in the order given
#   invocation pairs (--set), in the order given
#
# Mappings merge key by key, scalars replace, lists replace wholesale.
# ---------------------------------------------------------------------

_MISSING = object()


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


def merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Return base with override merged in. Neither argument is mutated."""
    out = copy.deepcopy(dict(base))
    for key, value in override.items():
        current = out.get(key, _MISSING)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            out[key] = merge(current, value)
        else:
            out[key] = copy.deepcopy(value)
    return out


class ValueTree:
    """
    Resolved, read-only value hierarchy used for one render pass.

    Lookups hand out copies, so nothing downstream can change the tree.
    """

    def __init__(self, data: Optional[Mapping[str, Any]] = None):
        self._data = _freeze(data or {})

    def _walk(self, path: str) -> Any:
        node: Any = self._data
        for part in path.split("."):
            if not isinstance(node, Mapping) or part not in node:
                return _MISSING
            node = node[part]
        return node

    def has(self, path: str) -> bool:
        return self._walk(path) is not _MISSING

    def lookup(self, path: str, *, source: str = "<values>") -> Any:
        node = self._walk(path)
        if node is _MISSING:
            raise UnresolvedReferenceError(reference=f"values.{path}", source=source)
        return _thaw(node)

    def get(self, path: str, default: Any = None) -> Any:
        node = self._walk(path)
        return default if node is _MISSING else _thaw(node)

    def to_dict(self) -> Dict[str, Any]:
        return _thaw(self._data)

    def digest(self) -> str:
        payload = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ValueTree) and self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"ValueTree({self.to_dict()!r})"


def resolve(defaults: Mapping[str, Any], overrides: Iterable[Mapping[str, Any]] = ()) -> ValueTree:
    """Merge overrides over defaults in the order supplied."""
    acc: Dict[str, Any] = copy.deepcopy(dict(defaults or {}))
    for layer in overrides:
        if layer:
            acc = merge(acc, layer)
    return ValueTree(acc)


# ---------------------------------------------------------------------
# Override sources
# ---------------------------------------------------------------------

def parse_set(pair: str) -> Dict[str, Any]:
    """
    Turn 'image.tag=v2' into {'image': {'tag': 'v2'}}.

    The right-hand side is read as a YAML scalar, so 'replicas=3' yields an int
    and 'debug=true' a bool. Quote it to force a string: 'tag="1.10"'.
    """
    if "=" not in pair:
        raise ValueError(f"--set expects key=value, got {pair!r}")
    path, raw = pair.split("=", 1)
    path = path.strip()
    if not path or any(not p for p in path.split(".")):
        raise ValueError(f"--set has an empty key segment: {pair!r}")

    try:
        value: Any = yaml.safe_load(raw) if raw.strip() else ""
    except yaml.YAMLError as e:
        raise ValueError(f"--set {pair!r}: value is not valid YAML ({e})") from e
    for part in reversed(path.split(".")):
        value = {part: value}
    return value


def load_values_file(path: str | Path) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Values file not found: {p}")
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise InvalidChartError(path=str(p), reason=f"invalid YAML: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidChartError(path=str(p), reason="values file must contain a mapping")
    return data


def environment_values(
    *,
    registry: Optional[str] = None,
    cluster: Optional[str] = None,
    issuer_url: Optional[str] = None,
) -> Dict[str, Any]:
    """Environment-scoped inputs, exposed to templates under values.global."""
    out: Dict[str, Any] = {}
    if registry:
        out["registry"] = registry
    if cluster:
        out["cluster"] = cluster
    if issuer_url:
        out["issuerUrl"] = issuer_url
    return {"global": out} if out else {}


def build_overrides(
    *,
    environment_file: Optional[Mapping[str, Any]] = None,
    environment: Optional[Mapping[str, Any]] = None,
    files: Iterable[str | Path] = (),
    set_pairs: Iterable[str] = (),
    extra: Iterable[Mapping[str, Any]] = (),
) -> List[Dict[str, Any]]:
    """Assemble override layers in precedence order (lowest first)."""
    layers: List[Dict[str, Any]] = []
    if environment_file:
        layers.append(dict(environment_file))
    if environment:
        layers.append(dict(environment))
    for f in files:
        layers.append(load_values_file(f))
    for layer in extra:
        layers.append(dict(layer))
    for pair in set_pairs:
        layers.append(parse_set(pair))
    return layers
