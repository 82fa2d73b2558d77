# credentials.py
from __future__ import annotations

import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, Mapping, Optional

from .errors import CredentialError

# Scopes a job may ask for. Build jobs push images; the deploy job only pulls
# and writes to the cluster.
REGISTRY_PUSH = "registry:push"
REGISTRY_PULL = "registry:pull"
CLUSTER_WRITE = "cluster:write"

BUILD_SCOPES = (REGISTRY_PUSH,)
DEPLOY_SCOPES = (REGISTRY_PULL, CLUSTER_WRITE)

# scope -> environment variable holding its token
ENV_VARS = {
    REGISTRY_PUSH: "RELM_REGISTRY_PUSH_TOKEN",
    REGISTRY_PULL: "RELM_REGISTRY_PULL_TOKEN",
    CLUSTER_WRITE: "RELM_CLUSTER_TOKEN",
}


class Secret:
    """A token that never shows up in reprs, logs or tracebacks."""

    __slots__ = ("_value",)

    def __init__(self, value: str):
        self._value = value

    def reveal(self) -> str:
        if self._value is None:
            raise CredentialError(scope="?", reason="credential has been revoked")
        return self._value

    def wipe(self) -> None:
        self._value = None

    def __repr__(self) -> str:
        return "Secret('***')"

    __str__ = __repr__


@dataclass
class Credential:
    scope: str
    secret: Secret
    expires_at: Optional[float] = None

    def token(self, *, now: Optional[float] = None) -> str:
        now = time.time() if now is None else now
        if self.expires_at is not None and now >= self.expires_at:
            raise CredentialError(scope=self.scope, reason="credential expired")
        try:
            return self.secret.reveal()
        except CredentialError:
            raise CredentialError(scope=self.scope, reason="credential has been revoked")


class ScopedCredentials:
    """
    The credentials one job was granted. Asking for a scope outside the grant
    is an error, and everything is wiped when the job ends.
    """

    def __init__(self, job: str, credentials: Mapping[str, Credential]):
        self.job = job
        self._creds: Dict[str, Credential] = dict(credentials)

    @property
    def scopes(self) -> tuple:
        return tuple(sorted(self._creds))

    def token(self, scope: str) -> str:
        cred = self._creds.get(scope)
        if cred is None:
            raise CredentialError(scope=scope, reason=f"not granted to job '{self.job}'")
        return cred.token()

    def revoke(self) -> None:
        for cred in self._creds.values():
            cred.secret.wipe()
        self._creds.clear()


class CredentialProvider:
    """
    Issues short-lived credentials for a set of scopes.

    Resolution is all-or-nothing: if any requested scope cannot be served,
    nothing is issued and CredentialError names the scope.
    """

    def __init__(
        self,
        sources: Mapping[str, Callable[[], Optional[str]]],
        *,
        ttl: Optional[float] = 3600.0,
    ):
        self.sources = dict(sources)
        self.ttl = ttl

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **kwargs) -> CredentialProvider:
        env = os.environ if environ is None else environ
        return cls({scope: (lambda var=var: env.get(var)) for scope, var in ENV_VARS.items()}, **kwargs)

    @classmethod
    def static(cls, tokens: Mapping[str, str], **kwargs) -> CredentialProvider:
        return cls({scope: (lambda t=t: t) for scope, t in tokens.items()}, **kwargs)

    def resolve(self, job: str, scopes: Iterable[str]) -> ScopedCredentials:
        issued: Dict[str, Credential] = {}
        expires = time.time() + self.ttl if self.ttl is not None else None
        for scope in scopes:
            source = self.sources.get(scope)
            if source is None:
                raise CredentialError(scope=scope, reason="no credential source configured")
            value = source()
            if not value:
                hint = ENV_VARS.get(scope)
                reason = f"no credential available (set {hint})" if hint else "no credential available"
                raise CredentialError(scope=scope, reason=reason)
            issued[scope] = Credential(scope=scope, secret=Secret(value), expires_at=expires)
        return ScopedCredentials(job, issued)

    @contextmanager
    def scoped(self, job: str, scopes: Iterable[str]) -> Iterator[ScopedCredentials]:
        creds = self.resolve(job, scopes)
        try:
            yield creds
        finally:
            creds.revoke()
