# render.py
from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

from .errors import InvalidChartError, InvalidResourceError, UnresolvedReferenceError
from .model import Chart, RenderedResource
from .values import ValueTree

# ---------------------------------------------------------------------
# Placeholders
# ---------------------------------------------------------------------
# Templates are plain YAML. Placeholders live inside scalars:
#
#   image: "${values.global.registry}/client:${values.client.image.tag}"
#   replicas: ${values.client.replicas:-1}
#   name: ${release.name}-client
#
# A scalar that is exactly one placeholder takes the value's type
# (int, bool, mapping, list). A placeholder embedded in a longer string
# is interpolated and must resolve to a scalar. `$${` is a literal `${`.
#
# Substitution runs on the parsed tree, not on the text, so a value can
# never inject YAML structure.
# ---------------------------------------------------------------------

DEPENDS_ON_ANNOTATION = "relm.dev/depends-on"

_TOKEN_RE = re.compile(r"\$\$\{|\$\{([^{}]*)\}")
_WHOLE_RE = re.compile(r"^\$\{([^{}]*)\}$")

# kind -> required dotted paths (checked after substitution)
_WORKLOAD_FIELDS = ("spec.selector", "spec.template.spec.containers")
REQUIRED_FIELDS: Dict[str, Tuple[str, ...]] = {
    "Deployment": _WORKLOAD_FIELDS,
    "StatefulSet": _WORKLOAD_FIELDS,
    "DaemonSet": _WORKLOAD_FIELDS,
    "Job": ("spec.template.spec.containers",),
    "Service": ("spec.ports",),
}
_CONTAINER_KINDS = {"Deployment", "StatefulSet", "DaemonSet", "Job"}


class _Context:
    """What a single template may reference."""

    def __init__(self, chart: Chart, values: ValueTree, release_name: str, namespace: str, source: str):
        self.values = values
        self.source = source
        self.builtins = {
            "release.name": release_name,
            "release.namespace": namespace,
            "chart.name": chart.name,
            "chart.version": chart.version,
            "chart.appVersion": chart.app_version,
        }

    def resolve(self, expr: str) -> Any:
        expr = expr.strip()
        default_raw: Optional[str] = None
        if ":-" in expr:
            expr, default_raw = expr.split(":-", 1)
            expr = expr.strip()

        if expr in self.builtins:
            return self.builtins[expr]

        if expr.startswith("values."):
            path = expr[len("values."):]
            if path and self.values.has(path):
                return self.values.lookup(path, source=self.source)
            if default_raw is not None:
                return yaml.safe_load(default_raw) if default_raw.strip() else ""

        raise UnresolvedReferenceError(reference=expr, source=self.source)


def _scalar_text(value: Any, expr: str, source: str) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        raise InvalidChartError(
            path=source,
            reason=f"placeholder '{expr}' resolves to a {type(value).__name__} and cannot be embedded in a string",
        )
    return str(value)


def _substitute_str(text: str, ctx: _Context) -> Any:
    whole = _WHOLE_RE.match(text)
    if whole:
        return ctx.resolve(whole.group(1))

    def repl(m: re.Match) -> str:
        if m.group(0) == "$${":
            return "${"
        return _scalar_text(ctx.resolve(m.group(1)), m.group(1).strip(), ctx.source)

    return _TOKEN_RE.sub(repl, text)


def _substitute(node: Any, ctx: _Context) -> Any:
    if isinstance(node, dict):
        out: Dict[Any, Any] = {}
        for k, v in node.items():
            key = _substitute_str(k, ctx) if isinstance(k, str) else k
            if isinstance(key, (dict, list)):
                raise InvalidChartError(path=ctx.source, reason=f"mapping key {k!r} must resolve to a scalar")
            out[key] = _substitute(v, ctx)
        return out
    if isinstance(node, list):
        return [_substitute(v, ctx) for v in node]
    if isinstance(node, str):
        return _substitute_str(node, ctx)
    return node


# ---------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------

def _dig(body: Dict[str, Any], path: str) -> Any:
    node: Any = body
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def _present(value: Any) -> bool:
    return value is not None and value != "" and value != [] and value != {}


def validate_resource(body: Dict[str, Any], label: str) -> None:
    """Raise InvalidResourceError naming the first missing required field."""
    for path in ("apiVersion", "kind", "metadata.name"):
        if not _present(_dig(body, path)):
            raise InvalidResourceError(resource=label, field=path)

    kind = body["kind"]
    for path in REQUIRED_FIELDS.get(kind, ()):
        if not _present(_dig(body, path)):
            raise InvalidResourceError(resource=label, field=path)

    if kind == "Ingress":
        if not _present(_dig(body, "spec.rules")) and not _present(_dig(body, "spec.defaultBackend")):
            raise InvalidResourceError(resource=label, field="spec.rules")

    if kind in _CONTAINER_KINDS:
        containers = _dig(body, "spec.template.spec.containers")
        if not isinstance(containers, list):
            raise InvalidResourceError(
                resource=label, field="spec.template.spec.containers", reason="must be a list"
            )
        for i, c in enumerate(containers):
            for f in ("name", "image"):
                if not isinstance(c, dict) or not _present(c.get(f)):
                    raise InvalidResourceError(resource=label, field=f"spec.template.spec.containers[{i}].{f}")


def _declared_references(body: Dict[str, Any]) -> List[str]:
    annotations = _dig(body, "metadata.annotations") or {}
    raw = annotations.get(DEPENDS_ON_ANNOTATION) if isinstance(annotations, dict) else None
    if raw is None:
        return []
    items: Iterable[Any] = raw if isinstance(raw, list) else str(raw).split(",")
    return [str(i).strip() for i in items if str(i).strip()]


# ---------------------------------------------------------------------
# Render
# ---------------------------------------------------------------------

def _parse_template(name: str, text: str) -> List[Dict[str, Any]]:
    try:
        docs = list(yaml.safe_load_all(text))
    except yaml.YAMLError as e:
        raise InvalidChartError(path=name, reason=f"invalid YAML: {e}") from e

    out: List[Dict[str, Any]] = []
    for i, doc in enumerate(docs):
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise InvalidChartError(path=name, reason=f"document {i} is not a mapping")
        out.append(doc)
    return out


def _link_references(
    resources: List[RenderedResource],
    declared: Dict[str, List[str]],
) -> List[RenderedResource]:
    by_key = {r.key: r for r in resources}
    by_name: Dict[str, List[str]] = {}
    for r in resources:
        by_name.setdefault(r.name, []).append(r.key)

    linked: List[RenderedResource] = []
    for r in resources:
        keys: List[str] = []
        for ref in declared[r.key]:
            if "/" in ref:
                if ref not in by_key:
                    raise UnresolvedReferenceError(reference=ref, source=r.source, resource=r.key)
                matches = [ref]
            else:
                matches = [k for k in by_name.get(ref, []) if k != r.key]
                if not matches:
                    raise UnresolvedReferenceError(reference=ref, source=r.source, resource=r.key)
            for k in matches:
                if k not in keys:
                    keys.append(k)
        linked.append(
            RenderedResource(
                kind=r.kind,
                name=r.name,
                namespace=r.namespace,
                body=r.body,
                references=tuple(keys),
                source=r.source,
                index=r.index,
            )
        )
    return linked


def render(
    chart: Chart,
    values: ValueTree,
    *,
    release_name: str,
    namespace: str = "default",
) -> List[RenderedResource]:
    """
    Expand every template of the chart against the value tree.

    Pure: the same (chart, values, release_name, namespace) always yields the
    same resources in the same (declaration) order.

    Raises:
        UnresolvedReferenceError: unknown placeholder path or dangling reference
        InvalidResourceError: required field missing or duplicate (kind, name)
        InvalidChartError: template is not valid YAML
    """
    resources: List[RenderedResource] = []
    declared: Dict[str, List[str]] = {}
    index = 0

    for template in chart.templates:
        ctx = _Context(chart, values, release_name, namespace, template.name)
        for doc_no, doc in enumerate(_parse_template(template.name, template.text)):
            body = _substitute(doc, ctx)
            kind = body.get("kind")
            name = _dig(body, "metadata.name")
            label = f"{kind}/{name}" if kind and name else f"{template.name}#{doc_no}"
            validate_resource(body, label)

            res = RenderedResource(
                kind=str(kind),
                name=str(name),
                namespace=str(_dig(body, "metadata.namespace") or namespace),
                body=body,
                source=template.name,
                index=index,
            )
            if res.key in declared:
                raise InvalidResourceError(
                    resource=res.key, field="metadata.name", reason="duplicate resource in render pass"
                )
            declared[res.key] = _declared_references(body)
            resources.append(res)
            index += 1

    return _link_references(resources, declared)


def to_manifest(resources: Iterable[RenderedResource]) -> str:
    """Multi-document YAML, one document per resource, in the given order."""
    chunks: List[str] = []
    for r in resources:
        doc = yaml.safe_dump(r.body, sort_keys=False, default_flow_style=False, allow_unicode=True)
        chunks.append(f"---\n# Source: {r.source}\n{doc}")
    return "".join(chunks)
