from __future__ import annotations

from relm.cache import compute_build_key, image_tag
from relm.dsl import service


def make_repo(root):
    ctx = root / "services" / "client"
    ctx.mkdir(parents=True)
    (ctx / "Dockerfile").write_text("FROM alpine\n")
    (ctx / "main.go").write_text("package main\n")
    return ctx


def test_key_is_stable(tmp_path) -> None:
    make_repo(tmp_path)
    svc = service("client")
    k1, _ = compute_build_key(svc, repo_root=tmp_path)
    k2, manifest = compute_build_key(svc, repo_root=tmp_path)
    assert k1 == k2
    assert [f for f, _ in manifest["inputs"]["files"]] == [
        "services/client/Dockerfile",
        "services/client/main.go",
    ]


def test_content_change_changes_key(tmp_path) -> None:
    ctx = make_repo(tmp_path)
    svc = service("client")
    before, _ = compute_build_key(svc, repo_root=tmp_path)
    (ctx / "main.go").write_text("package main\n\nfunc main() {}\n")
    after, _ = compute_build_key(svc, repo_root=tmp_path)
    assert before != after


def test_excluded_files_do_not_count(tmp_path) -> None:
    ctx = make_repo(tmp_path)
    svc = service("client")
    before, _ = compute_build_key(svc, repo_root=tmp_path)
    (ctx / "node_modules" / "x").mkdir(parents=True)
    (ctx / "node_modules" / "x" / "index.js").write_text("//")
    (ctx / "notes.tmp").write_text("scratch")
    after, _ = compute_build_key(svc, repo_root=tmp_path, excludes=["**/*.tmp"])
    assert before == after


def test_build_args_and_inputs_count(tmp_path) -> None:
    make_repo(tmp_path)
    (tmp_path / "proto").mkdir()
    (tmp_path / "proto" / "bank.proto").write_text("syntax = \"proto3\";\n")
    plain, _ = compute_build_key(service("client"), repo_root=tmp_path)
    with_args, _ = compute_build_key(service("client", build_args={"GO_VERSION": 1.22}), repo_root=tmp_path)
    with_proto, manifest = compute_build_key(
        service("client", inputs=["services/client", "proto/**/*.proto"]), repo_root=tmp_path
    )
    assert len({plain, with_args, with_proto}) == 3
    assert "proto/bank.proto" in [f for f, _ in manifest["inputs"]["files"]]


def test_missing_inputs_are_recorded(tmp_path) -> None:
    _, manifest = compute_build_key(service("ghost"), repo_root=tmp_path)
    assert manifest["inputs"]["files"] == []
    assert manifest["inputs"]["missing"] == ["services/ghost"]


def test_image_tag() -> None:
    key = "0123456789abcdef" * 4
    assert image_tag(key) == "src-0123456789ab"
