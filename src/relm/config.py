# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any, Dict, Mapping, Optional

from .store import DEFAULT_STORE_URL
from .values import environment_values


@dataclass(frozen=True)
class Settings:
    """
    Environment-scoped configuration.

    registry, cluster and issuer_url are handed to templates as
    values.global.{registry,cluster,issuerUrl}; templates never hardcode them.
    """
    store_url: str = DEFAULT_STORE_URL
    redis_url: Optional[str] = None
    cluster: Optional[str] = None
    namespace: str = "default"
    environment: Optional[str] = None
    registry: Optional[str] = None
    issuer_url: Optional[str] = None
    readiness_timeout: float = 300.0
    kubectl: str = "kubectl"

    def values(self) -> Dict[str, Any]:
        return environment_values(registry=self.registry, cluster=self.cluster, issuer_url=self.issuer_url)

    def with_overrides(self, **kwargs: Any) -> Settings:
        """Apply CLI options; None means 'not given'."""
        return replace(self, **{k: v for k, v in kwargs.items() if v is not None})


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    return Settings(
        store_url=env.get("RELM_STORE_URL", DEFAULT_STORE_URL),
        redis_url=env.get("RELM_REDIS_URL") or None,
        cluster=env.get("RELM_CLUSTER") or None,
        namespace=env.get("RELM_NAMESPACE", "default"),
        environment=env.get("RELM_ENVIRONMENT") or None,
        registry=env.get("RELM_REGISTRY") or None,
        issuer_url=env.get("RELM_ISSUER_URL") or None,
        readiness_timeout=float(env.get("RELM_READINESS_TIMEOUT", "300")),
        kubectl=env.get("RELM_KUBECTL", "kubectl"),
    )
