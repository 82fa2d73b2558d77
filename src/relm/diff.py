# diff.py
from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional

# ---------------------------------------------------------------------
# Ownership rule
# ---------------------------------------------------------------------
# A release owns exactly the fields its rendered documents set. Everything
# else on the live object (status, uid, resourceVersion, an assigned
# clusterIP...) belongs to the runtime and is never sent back.
#
# compute_patch produces an RFC 7386 JSON merge patch:
#   - a desired field that differs from the live one is included
#   - a list needs a patch when it differs from the previous revision's, or
#     when the live list no longer contains it (the control plane may add
#     defaults such as protocol or nodePort inside list elements)
#   - a list patch replaces the whole list, so runtime-owned keys of each
#     live element are carried into the matching desired element
#   - a field the previous revision set and the new one dropped is set to
#     None (delete), but only if it is still present on the live object
#
# None means "nothing to do": the resource is already in the desired state.
# ---------------------------------------------------------------------


def _contains(have: Any, want: Any) -> bool:
    """True if every field of `want` is present with the same value in `have`."""
    if isinstance(want, Mapping):
        if not isinstance(have, Mapping):
            return False
        return all(
            k in have and _contains(have[k], v)
            for k, v in want.items()
            if v is not None
        )
    if isinstance(want, list):
        if not isinstance(have, list) or len(have) != len(want):
            return False
        return all(_contains(h, w) for h, w in zip(have, want))
    return have == want


def _pair(items: Optional[List[Any]], want: List[Any]) -> List[Any]:
    """
    The element of `items` matching each element of `want`: by `name` when
    every desired element is a named mapping (containers, env, ports), else
    by position.
    """
    items = items if isinstance(items, list) else []
    named = bool(want) and all(isinstance(w, Mapping) and "name" in w for w in want)
    if named:
        by_name = {i.get("name"): i for i in items if isinstance(i, Mapping)}
        return [by_name.get(w["name"]) for w in want]
    return [items[i] if i < len(items) else None for i in range(len(want))]


def _keep_runtime(want: Any, have: Any, prev: Any) -> Any:
    """`want` plus the keys of `have` the release never set."""
    if isinstance(want, list):
        return [
            _keep_runtime(w, h, p)
            for w, h, p in zip(want, _pair(have, want), _pair(prev, want))
        ]
    if not isinstance(want, Mapping) or not isinstance(have, Mapping):
        return copy.deepcopy(want)
    owned = prev if isinstance(prev, Mapping) else {}
    out: Dict[str, Any] = {}
    for key, value in have.items():
        if key not in want and key not in owned:
            out[key] = copy.deepcopy(value)
    for key, value in want.items():
        if value is not None:
            out[key] = _keep_runtime(value, have.get(key), owned.get(key))
    return out


def _list_needs_patch(have: Any, want: List[Any], prev: Any, has_prev: bool) -> bool:
    if has_prev and prev != want:
        return True
    return not _contains(have, want)


def _patch_mapping(
    current: Mapping[str, Any],
    desired: Mapping[str, Any],
    last_applied: Optional[Mapping[str, Any]],
) -> Dict[str, Any]:
    patch: Dict[str, Any] = {}

    for key, want in desired.items():
        have = current.get(key) if isinstance(current, Mapping) else None
        prev = last_applied.get(key) if isinstance(last_applied, Mapping) else None

        if want is None:
            # merge patches cannot express an explicit null; treat as absent
            if key in current:
                patch[key] = None
        elif isinstance(want, list):
            has_prev = isinstance(last_applied, Mapping) and key in last_applied
            if _list_needs_patch(have, want, prev, has_prev):
                patch[key] = _keep_runtime(want, have, prev)
        elif isinstance(want, Mapping) and isinstance(have, Mapping):
            sub = _patch_mapping(have, want, prev if isinstance(prev, Mapping) else None)
            if sub:
                patch[key] = sub
        elif key not in current or have != want:
            patch[key] = copy.deepcopy(want)

    if last_applied:
        for key in last_applied:
            if key not in desired and key in current:
                patch[key] = None

    return patch


def compute_patch(
    current: Mapping[str, Any],
    desired: Mapping[str, Any],
    last_applied: Optional[Mapping[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """Merge patch taking current to desired on release-owned fields, or None."""
    patch = _patch_mapping(current or {}, desired, last_applied)
    return patch or None


def apply_merge_patch(target: Any, patch: Any) -> Any:
    """RFC 7386 merge patch application. Returns a new object."""
    if not isinstance(patch, Mapping):
        return copy.deepcopy(patch)
    out: Dict[str, Any] = copy.deepcopy(dict(target)) if isinstance(target, Mapping) else {}
    for key, value in patch.items():
        if value is None:
            out.pop(key, None)
        else:
            out[key] = apply_merge_patch(out.get(key), value)
    return out


def changed_paths(patch: Optional[Mapping[str, Any]], prefix: str = "") -> List[str]:
    """Flatten a merge patch into dotted field paths, for display."""
    if not patch:
        return []
    out: List[str] = []
    for key, value in patch.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping) and value:
            out.extend(changed_paths(value, path))
        else:
            out.append(path)
    return out
