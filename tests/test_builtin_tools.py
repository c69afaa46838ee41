from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import httpx

from cowork_runtime.core.executor import Executor
from cowork_runtime.skills.loader import SkillsLoader
from cowork_runtime.tools.builtin import register_builtin_tools
from cowork_runtime.tools.builtin.list_dir import list_dir
from cowork_runtime.tools.builtin.read_file import read_file
from cowork_runtime.tools.builtin.run_command import run_command
from cowork_runtime.tools.builtin.skills import list_skills, read_skill
from cowork_runtime.tools.builtin.view_image import view_image
from cowork_runtime.tools.builtin.web_fetch import web_fetch
from cowork_runtime.tools.builtin.write_file import write_file
from cowork_runtime.tools.protocol import ToolCall
from cowork_runtime.tools.registry import ToolExecutionContext, ToolRegistry


def _mk_ctx(tmp_path: Path, **kwargs: Any) -> ToolExecutionContext:
    return ToolExecutionContext(workspace_root=tmp_path, **kwargs)


def _call(tool: str, /, **args: Any) -> ToolCall:
    return ToolCall(call_id="c1", name=tool, args=dict(args))


def _payload(content: str) -> dict:
    return json.loads(content)


def test_builtin_registry_side_effect_flags(tmp_path: Path) -> None:
    registry = ToolRegistry(ctx=_mk_ctx(tmp_path))
    register_builtin_tools(registry)
    pure = sorted(s.name for s in registry.list_specs() if s.side_effect_free)
    gated = sorted(s.name for s in registry.list_specs() if not s.side_effect_free)
    assert pure == ["list_skills", "read_file", "read_skill", "view_image"]
    assert gated == ["list_dir", "run_command", "web_fetch", "write_file"]
    for spec in registry.list_specs():
        assert spec.to_model_tool()["input_schema"]["type"] == "object"


def test_read_file_truncates_head_and_tail(tmp_path: Path) -> None:
    (tmp_path / "big.txt").write_text("a" * 50 + "b" * 50, encoding="utf-8")
    res = read_file(_call("read_file", path="big.txt", max_bytes=10), _mk_ctx(tmp_path))
    assert res.ok is True
    body = _payload(res.content)
    assert body["truncated"] is True
    assert body["stdout"].startswith("aaaaa")
    assert body["stdout"].endswith("bbbbb")
    assert "<truncated>" in body["stdout"]


def test_read_file_outside_workspace_is_permission_denied(tmp_path: Path) -> None:
    ws = tmp_path / "ws"
    ws.mkdir()
    (tmp_path / "secret.txt").write_text("x", encoding="utf-8")
    res = read_file(_call("read_file", path="../secret.txt"), _mk_ctx(ws))
    assert res.ok is False
    assert res.error_kind == "permission_denied"

    res = read_file(_call("read_file", path="../secret.txt"), _mk_ctx(ws, authorized_folders=[tmp_path]))
    assert res.ok is True


def test_read_file_missing_is_execution_failed(tmp_path: Path) -> None:
    res = read_file(_call("read_file", path="nope.txt"), _mk_ctx(tmp_path))
    assert res.error_kind == "execution_failed"


def test_write_file_creates_parents_and_appends(tmp_path: Path) -> None:
    ctx = _mk_ctx(tmp_path)
    res = write_file(_call("write_file", path="out/note.txt", content="one\n"), ctx)
    assert res.ok is True
    res = write_file(_call("write_file", path="out/note.txt", content="two\n", append=True), ctx)
    assert res.ok is True
    assert (tmp_path / "out" / "note.txt").read_text(encoding="utf-8") == "one\ntwo\n"
    assert _payload(res.content)["data"]["bytes"] == 4


def test_list_dir_respects_depth_and_hides_dotfiles(tmp_path: Path) -> None:
    (tmp_path / "src" / "pkg").mkdir(parents=True)
    (tmp_path / "src" / "pkg" / "mod.py").write_text("", encoding="utf-8")
    (tmp_path / "README.md").write_text("", encoding="utf-8")
    (tmp_path / ".git").mkdir()

    shallow = _payload(list_dir(_call("list_dir"), _mk_ctx(tmp_path)).content)
    assert [e["rel_path"] for e in shallow["data"]["entries"]] == ["README.md", "src"]
    assert "src/" in shallow["stdout"]

    deep = _payload(list_dir(_call("list_dir", depth=3), _mk_ctx(tmp_path)).content)
    assert [e["rel_path"] for e in deep["data"]["entries"]] == ["README.md", "src", "src/pkg", "src/pkg/mod.py"]

    limited = _payload(list_dir(_call("list_dir", depth=3, limit=1), _mk_ctx(tmp_path)).content)
    assert limited["truncated"] is True
    assert limited["data"]["total"] == 4


def test_list_dir_on_a_file_fails(tmp_path: Path) -> None:
    (tmp_path / "f.txt").write_text("", encoding="utf-8")
    res = list_dir(_call("list_dir", path="f.txt"), _mk_ctx(tmp_path))
    assert res.error_kind == "execution_failed"


def test_run_command_success_and_exit_code(tmp_path: Path) -> None:
    ctx = _mk_ctx(tmp_path, executor=Executor())
    ok = run_command(_call("run_command", command="echo hello"), ctx)
    assert ok.ok is True
    assert _payload(ok.content)["stdout"] == "hello\n"

    failed = run_command(_call("run_command", command="echo oops >&2; exit 3"), ctx)
    assert failed.ok is False
    assert failed.error_kind == "execution_failed"
    body = _payload(failed.content)
    assert body["exit_code"] == 3
    assert "oops" in body["stderr"]


def test_run_command_passes_env_and_cwd(tmp_path: Path) -> None:
    (tmp_path / "sub").mkdir()
    ctx = _mk_ctx(tmp_path, executor=Executor(), env={"BASE_VAR": "base"})
    res = run_command(_call("run_command", command='echo "$BASE_VAR-$EXTRA_VAR"; pwd', cwd="sub", env={"EXTRA_VAR": "extra"}), ctx)
    assert res.ok is True
    lines = _payload(res.content)["stdout"].splitlines()
    assert lines[0] == "base-extra"
    assert Path(lines[1]).resolve() == (tmp_path / "sub").resolve()


def test_run_command_cancelled_by_checker(tmp_path: Path) -> None:
    ctx = _mk_ctx(tmp_path, executor=Executor(), cancel_checker=lambda: True)
    res = run_command(_call("run_command", command="sleep 5"), ctx)
    assert res.error_kind == "cancelled"


def test_run_command_without_executor_fails(tmp_path: Path) -> None:
    res = run_command(_call("run_command", command="true"), _mk_ctx(tmp_path))
    assert res.error_kind == "execution_failed"


def test_view_image_returns_an_image_attachment(tmp_path: Path) -> None:
    raw = b"\x89PNG\r\n\x1a\nfake"
    (tmp_path / "pic.png").write_bytes(raw)
    res = view_image(_call("view_image", path="pic.png"), _mk_ctx(tmp_path))
    assert res.ok is True
    assert len(res.images) == 1
    assert res.images[0].media_type == "image/png"
    assert res.images[0].raw_bytes() == raw
    assert res.to_block("tu_1").images[0].media_type == "image/png"


def test_view_image_rejects_non_images(tmp_path: Path) -> None:
    (tmp_path / "notes.txt").write_text("x", encoding="utf-8")
    res = view_image(_call("view_image", path="notes.txt"), _mk_ctx(tmp_path))
    assert res.error_kind == "invalid_arguments"


def test_skill_tools_list_and_read(tmp_path: Path) -> None:
    root = tmp_path / "skills"
    (root / "pdf").mkdir(parents=True)
    (root / "pdf" / "SKILL.md").write_text(
        "---\nname: pdf\ndescription: Work with PDF files.\n---\n# PDF\nUse pdftotext.\n",
        encoding="utf-8",
    )
    ctx = _mk_ctx(tmp_path, skills=SkillsLoader([root]))

    listed = list_skills(_call("list_skills"), ctx)
    assert _payload(listed.content)["stdout"] == "- pdf: Work with PDF files."

    body = read_skill(_call("read_skill", name="pdf"), ctx)
    assert _payload(body.content)["stdout"] == "# PDF\nUse pdftotext.\n"

    missing = read_skill(_call("read_skill", name="docx"), ctx)
    assert missing.error_kind == "execution_failed"


def test_skill_tools_without_loader(tmp_path: Path) -> None:
    ctx = _mk_ctx(tmp_path)
    assert "(no skills installed)" in _payload(list_skills(_call("list_skills"), ctx).content)["stdout"]
    assert read_skill(_call("read_skill", name="x"), ctx).error_kind == "execution_failed"


def test_web_fetch_requires_network_access(tmp_path: Path) -> None:
    res = web_fetch(_call("web_fetch", url="https://example.com"), _mk_ctx(tmp_path))
    assert res.error_kind == "permission_denied"


def test_web_fetch_reads_and_truncates_body(tmp_path: Path) -> None:
    seen = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, content=b"hello world", headers={"content-type": "text/plain; charset=utf-8"})

    ctx = _mk_ctx(tmp_path, network_access=True, http_transport=httpx.MockTransport(_handler))
    full = web_fetch(_call("web_fetch", url="https://example.com/a"), ctx)
    assert full.ok is True
    body = _payload(full.content)
    assert body["stdout"] == "hello world"
    assert body["data"]["status_code"] == 200

    cut = web_fetch(_call("web_fetch", url="https://example.com/b", max_bytes=5), ctx)
    body = _payload(cut.content)
    assert body["stdout"] == "hello"
    assert body["truncated"] is True
    assert seen == ["https://example.com/a", "https://example.com/b"]


def test_web_fetch_http_errors_and_bad_urls(tmp_path: Path) -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(404, content=b"not here"))
    ctx = _mk_ctx(tmp_path, network_access=True, http_transport=transport)

    res = web_fetch(_call("web_fetch", url="https://example.com/missing"), ctx)
    assert res.error_kind == "execution_failed"
    assert "HTTP 404" in _payload(res.content)["stderr"]

    res = web_fetch(_call("web_fetch", url="file:///etc/passwd"), ctx)
    assert res.error_kind == "invalid_arguments"


def test_web_fetch_transport_errors_are_execution_failed(tmp_path: Path) -> None:
    def _fail(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    ctx = _mk_ctx(tmp_path, network_access=True, http_transport=httpx.MockTransport(_fail))
    res = web_fetch(_call("web_fetch", url="https://example.com"), ctx)
    assert res.error_kind == "execution_failed"
    assert "ConnectError" in _payload(res.content)["stderr"]
