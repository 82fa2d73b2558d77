# store.py
from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import ReleaseNotFoundError
from .model import RecordRef, Release, ReleaseStatus, RenderedResource

DEFAULT_STORE_URL = "sqlite:///.relm/releases.db"


class Base(DeclarativeBase):
    pass


class ReleaseRow(Base):
    __tablename__ = "release_revisions"
    __table_args__ = (sa.UniqueConstraint("name", "revision", name="uq_release_revision"),)

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(sa.String(253), nullable=False, index=True)
    revision: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    namespace: Mapped[str] = mapped_column(sa.String(253), nullable=False)
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    cause: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    chart_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    chart_version: Mapped[str] = mapped_column(sa.Text, nullable=False)
    app_version: Mapped[str] = mapped_column(sa.Text, nullable=False)
    values_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False)
    resources_json: Mapped[list] = mapped_column(sa.JSON, nullable=False)
    applied_json: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    failed_resource: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _to_release(row: ReleaseRow) -> Release:
    return Release(
        name=row.name,
        revision=row.revision,
        namespace=row.namespace,
        chart_name=row.chart_name,
        chart_version=row.chart_version,
        app_version=row.app_version,
        values=row.values_json,
        resources=tuple(RenderedResource.from_dict(r) for r in row.resources_json),
        status=ReleaseStatus(row.status),
        cause=row.cause,
        applied=tuple(row.applied_json or []),
        failed_resource=row.failed_resource,
        error=row.error,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _json_dumps(obj) -> str:
    # YAML values may carry dates; store them as text
    return json.dumps(obj, default=str)


def make_engine(url: str) -> sa.Engine:
    if url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection so every thread sees the same in-memory db
        return sa.create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            json_serializer=_json_dumps,
        )
    if url.startswith("sqlite:///"):
        Path(url[len("sqlite:///"):]).expanduser().parent.mkdir(parents=True, exist_ok=True)
        return sa.create_engine(url, connect_args={"check_same_thread": False}, json_serializer=_json_dumps)
    return sa.create_engine(url, pool_pre_ping=True, json_serializer=_json_dumps)


class ReleaseStore:
    """
    Append-only history of release revisions.

    Revisions for a name are strictly increasing and never reused. A record
    is written once as `pending` and finalized once to `deployed` or
    `failed`; nothing is updated after that and nothing is ever deleted.

    Single-writer discipline per release name is the caller's job (see
    relm.locks); the (name, revision) unique constraint is the backstop.
    """

    def __init__(self, url: str = DEFAULT_STORE_URL):
        self.url = url
        self.engine = make_engine(url)
        Base.metadata.create_all(self.engine)
        self._session = sessionmaker(self.engine, expire_on_commit=False)
        # sqlite connections do not tolerate concurrent use; store calls are short
        self._lock = threading.RLock()

    @contextmanager
    def session(self) -> Iterator[Session]:
        with self._lock, self._session() as s:
            yield s

    def next_revision(self, name: str) -> int:
        with self.session() as s:
            q = sa.select(sa.func.max(ReleaseRow.revision)).where(ReleaseRow.name == name)
            top = s.execute(q).scalar_one_or_none()
            return (top or 0) + 1

    def append(self, release: Release) -> RecordRef:
        """
        Store a new revision. Raises ValueError if the revision is not
        strictly greater than every existing one for the name.
        """
        stamp = now_utc()
        with self.session() as s:
            with s.begin():
                q = sa.select(sa.func.max(ReleaseRow.revision)).where(ReleaseRow.name == release.name)
                top = s.execute(q).scalar_one_or_none() or 0
                if release.revision <= top:
                    raise ValueError(
                        f"revision {release.revision} for release '{release.name}' "
                        f"is not greater than existing revision {top}"
                    )
                s.add(
                    ReleaseRow(
                        name=release.name,
                        revision=release.revision,
                        namespace=release.namespace,
                        status=release.status.value,
                        cause=release.cause,
                        chart_name=release.chart_name,
                        chart_version=release.chart_version,
                        app_version=release.app_version,
                        values_json=release.values,
                        resources_json=[r.to_dict() for r in release.resources],
                        applied_json=list(release.applied),
                        failed_resource=release.failed_resource,
                        error=release.error,
                        created_at=release.created_at or stamp,
                        updated_at=stamp,
                    )
                )
                try:
                    s.flush()
                except IntegrityError as e:
                    raise ValueError(
                        f"revision {release.revision} for release '{release.name}' already exists"
                    ) from e
        return RecordRef(name=release.name, revision=release.revision)

    def finalize(
        self,
        ref: RecordRef,
        status: ReleaseStatus,
        *,
        applied: Sequence[str] = (),
        failed_resource: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Release:
        """Move a pending revision to its terminal status. Only once."""
        if status not in (ReleaseStatus.DEPLOYED, ReleaseStatus.FAILED):
            raise ValueError(f"cannot finalize to {status.value}")
        with self.session() as s:
            with s.begin():
                row = self._row(s, ref.name, ref.revision)
                if row.status != ReleaseStatus.PENDING.value:
                    raise ValueError(
                        f"release '{ref.name}' revision {ref.revision} is already {row.status}"
                    )
                row.status = status.value
                row.applied_json = list(applied)
                row.failed_resource = failed_resource
                row.error = error
                row.updated_at = now_utc()
            return _to_release(row)

    def _row(self, s: Session, name: str, revision: int) -> ReleaseRow:
        q = sa.select(ReleaseRow).where(ReleaseRow.name == name, ReleaseRow.revision == revision)
        row = s.execute(q).scalar_one_or_none()
        if row is None:
            raise ReleaseNotFoundError(release=name, revision=revision)
        return row

    def get(self, name: str, revision: Optional[int] = None) -> Release:
        """A specific revision, or the current one (highest deployed) if omitted."""
        with self.session() as s:
            if revision is not None:
                return _to_release(self._row(s, name, revision))
            q = (
                sa.select(ReleaseRow)
                .where(ReleaseRow.name == name, ReleaseRow.status == ReleaseStatus.DEPLOYED.value)
                .order_by(ReleaseRow.revision.desc())
                .limit(1)
            )
            row = s.execute(q).scalar_one_or_none()
            if row is None:
                raise ReleaseNotFoundError(release=name)
            return _to_release(row)

    def current(self, name: str) -> Optional[Release]:
        try:
            return self.get(name)
        except ReleaseNotFoundError:
            return None

    def history(self, name: str) -> List[Release]:
        """All revisions, most recent first."""
        with self.session() as s:
            q = sa.select(ReleaseRow).where(ReleaseRow.name == name).order_by(ReleaseRow.revision.desc())
            return [_to_release(r) for r in s.execute(q).scalars()]

    def release_names(self) -> List[str]:
        with self.session() as s:
            q = sa.select(ReleaseRow.name).distinct().order_by(ReleaseRow.name)
            return list(s.execute(q).scalars())
