# chart.py
from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidChartError
from .model import Chart, Template
from .values import load_values_file

# Chart layout on disk:
#   <chart>/
#     Chart.yaml               name, version, appVersion, description
#     values.yaml              defaults
#     values-<env>.yaml        optional per-environment overrides
#     templates/*.yaml|*.yml   manifest templates, declaration order = filename order

SEMVER_RE = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)

TEMPLATE_SUFFIXES = (".yaml", ".yml")


class ChartMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1)
    version: str
    app_version: str = Field(alias="appVersion")
    description: str = ""

    @field_validator("version")
    @classmethod
    def _semver(cls, v: str) -> str:
        if not SEMVER_RE.match(v):
            raise ValueError(f"not a semantic version: {v!r}")
        return v

    @field_validator("app_version", mode="before")
    @classmethod
    def _app_version_str(cls, v: Any) -> str:
        # appVersion: 1.10 would otherwise arrive as a float
        return str(v)


def _read_meta(chart_dir: Path) -> ChartMeta:
    meta_path = chart_dir / "Chart.yaml"
    if not meta_path.exists():
        raise InvalidChartError(path=str(chart_dir), reason="Chart.yaml not found")
    try:
        raw = yaml.safe_load(meta_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise InvalidChartError(path=str(meta_path), reason=f"invalid YAML: {e}") from e
    if not isinstance(raw, dict):
        raise InvalidChartError(path=str(meta_path), reason="Chart.yaml must contain a mapping")
    try:
        return ChartMeta.model_validate(raw)
    except ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ())) or "Chart.yaml"
        raise InvalidChartError(path=str(meta_path), reason=f"{loc}: {first.get('msg')}") from e


def _read_templates(chart_dir: Path) -> List[Template]:
    tdir = chart_dir / "templates"
    if not tdir.is_dir():
        raise InvalidChartError(path=str(chart_dir), reason="templates/ directory not found")
    files = sorted(p for p in tdir.iterdir() if p.is_file() and p.suffix in TEMPLATE_SUFFIXES)
    if not files:
        raise InvalidChartError(path=str(tdir), reason="no templates found")
    return [
        Template(name=f"templates/{p.name}", text=p.read_text(encoding="utf-8"))
        for p in files
    ]


def load_chart(path: str | Path) -> Chart:
    """
    Load a chart directory into a Chart.

    Raises:
        InvalidChartError: missing files, bad YAML, or invalid Chart.yaml fields
    """
    chart_dir = Path(path).expanduser().resolve()
    if not chart_dir.is_dir():
        raise InvalidChartError(path=str(chart_dir), reason="not a directory")

    meta = _read_meta(chart_dir)
    values_path = chart_dir / "values.yaml"
    defaults: Dict[str, Any] = load_values_file(values_path) if values_path.exists() else {}

    return Chart(
        name=meta.name,
        version=meta.version,
        app_version=meta.app_version,
        templates=tuple(_read_templates(chart_dir)),
        defaults=defaults,
        description=meta.description,
        path=str(chart_dir),
    )


def environment_values_file(chart: Chart, environment: Optional[str]) -> Dict[str, Any]:
    """values-<env>.yaml next to the chart's values.yaml, or {} if absent."""
    if not environment or not chart.path:
        return {}
    p = Path(chart.path) / f"values-{environment}.yaml"
    if not p.exists():
        return {}
    return load_values_file(p)
