"""
Executor：子进程命令执行（run_command 工具的底层）。

要点：
- `run_command(argv, ...)` / `run_shell(command, ...)` 返回结构化 `CommandResult`
- 超时或取消时终止整个进程组（SIGTERM → 宽限 → SIGKILL）
- 取消通过 `cancel_checker` 轮询感知，返回 `error_kind="cancelled"`
- stdout/stderr 采用“尾部截断”：分别限额，再对合计施加上限（优先保留 stderr）
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import IO, Callable, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class CommandResult(BaseModel):
    """
    命令执行结果。

    字段：
    - ok：exit_code==0 且未超时/取消
    - exit_code：进程退出码；超时/取消时为 None
    - stdout/stderr：捕获的输出（可能被截断，截断时带前缀标记）
    - duration_ms：耗时
    - timeout / truncated：是否超时、是否截断
    - error_kind：validation / not_found / timeout / cancelled / exit_code / unknown
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = Field(default=0, ge=0)
    timeout: bool = False
    truncated: bool = False
    error_kind: Optional[str] = None


class _TailBuffer:
    """只保留尾部的有界字节缓冲。"""

    def __init__(self, max_bytes: int) -> None:
        if max_bytes < 0:
            raise ValueError("max_bytes must be >= 0")
        self._max = max_bytes
        self._buf = bytearray()
        self.truncated = False

    def append(self, chunk: bytes) -> None:
        if not chunk:
            return
        if self._max == 0:
            self.truncated = True
            return
        self._buf.extend(chunk)
        overflow = len(self._buf) - self._max
        if overflow > 0:
            del self._buf[:overflow]
            self.truncated = True

    def value(self) -> bytes:
        return bytes(self._buf)


def _pump(stream: Optional[IO[bytes]], buf: _TailBuffer) -> None:
    """后台线程：持续读取子进程输出写入缓冲，直到 EOF。"""

    if stream is None:
        return
    while True:
        try:
            chunk = stream.read(4096)
        except (OSError, ValueError):
            return
        if not chunk:
            return
        buf.append(chunk)


def _failed(kind: str, message: str, *, started: float) -> CommandResult:
    return CommandResult(ok=False, stderr=message, duration_ms=int((time.monotonic() - started) * 1000), error_kind=kind)


class Executor:
    """
    命令执行器。

    参数：
    - max_stdout_bytes/max_stderr_bytes：单流最大记录字节数（尾部保留）
    - max_combined_bytes：stdout+stderr 合计上限（尾部保留；优先保留 stderr）
    - terminate_grace_ms：SIGTERM → SIGKILL 的宽限时间
    - poll_interval_sec：等待子进程时检查取消/超时的间隔
    """

    def __init__(
        self,
        *,
        max_stdout_bytes: int = 64 * 1024,
        max_stderr_bytes: int = 64 * 1024,
        max_combined_bytes: int = 128 * 1024,
        terminate_grace_ms: int = 200,
        poll_interval_sec: float = 0.05,
        truncate_marker: str = "...<truncated>\n",
    ) -> None:
        if min(max_stdout_bytes, max_stderr_bytes, max_combined_bytes) < 0:
            raise ValueError("max_*_bytes must be >= 0")
        if terminate_grace_ms < 0:
            raise ValueError("terminate_grace_ms must be >= 0")
        self._max_stdout = max_stdout_bytes
        self._max_stderr = max_stderr_bytes
        self._max_combined = max_combined_bytes
        self._grace_sec = terminate_grace_ms / 1000.0
        self._poll = poll_interval_sec
        self._marker = truncate_marker

    def run_shell(
        self,
        command: str,
        *,
        cwd: Path,
        shell: str = "/bin/sh",
        env: Optional[Mapping[str, str]] = None,
        timeout_ms: int = 60_000,
        cancel_checker: Optional[Callable[[], bool]] = None,
    ) -> CommandResult:
        """以 `<shell> -c <command>` 执行一条命令字符串；其余参数同 `run_command`。"""

        return self.run_command(
            [shell, "-c", command],
            cwd=cwd,
            env=env,
            timeout_ms=timeout_ms,
            cancel_checker=cancel_checker,
        )

    def run_command(
        self,
        argv: list[str],
        *,
        cwd: Path,
        env: Optional[Mapping[str, str]] = None,
        timeout_ms: int = 60_000,
        cancel_checker: Optional[Callable[[], bool]] = None,
    ) -> CommandResult:
        """
        执行 argv 命令并捕获结果。

        参数：
        - argv：命令与参数（至少 1 项）
        - cwd：工作目录（必须存在且为目录）
        - env：追加/覆盖的环境变量
        - timeout_ms：超时毫秒数
        - cancel_checker：返回 True 时终止子进程并返回 cancelled
        """

        started = time.monotonic()
        if not argv:
            return _failed("validation", "argv must not be empty", started=started)
        cwd_path = Path(cwd)
        if not cwd_path.is_dir():
            return _failed("validation", f"cwd does not exist or is not a directory: {cwd_path}", started=started)
        if timeout_ms < 1:
            return _failed("validation", "timeout_ms must be >= 1", started=started)

        merged_env = dict(os.environ)
        if env:
            merged_env.update({str(k): str(v) for k, v in env.items()})

        popen_kwargs: dict = {
            "cwd": str(cwd_path),
            "env": merged_env,
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.PIPE,
            "stderr": subprocess.PIPE,
        }
        if os.name != "nt":
            popen_kwargs["start_new_session"] = True
        else:  # pragma: no cover
            popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP  # type: ignore[attr-defined]

        try:
            proc = subprocess.Popen(argv, **popen_kwargs)  # noqa: S603
        except FileNotFoundError as e:
            return _failed("not_found", str(e), started=started)
        except OSError as e:  # pragma: no cover
            return _failed("unknown", str(e), started=started)

        out_buf = _TailBuffer(self._max_stdout)
        err_buf = _TailBuffer(self._max_stderr)
        readers = [
            threading.Thread(target=_pump, args=(proc.stdout, out_buf), daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, err_buf), daemon=True),
        ]
        for t in readers:
            t.start()

        timed_out = False
        cancelled = False
        deadline = started + timeout_ms / 1000.0
        try:
            while True:
                if cancel_checker is not None and _safe_check(cancel_checker):
                    cancelled = True
                    self._terminate(proc)
                    break
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    timed_out = True
                    self._terminate(proc)
                    break
                try:
                    proc.wait(timeout=min(self._poll, remaining))
                    break
                except subprocess.TimeoutExpired:
                    continue
        finally:
            for t in readers:
                t.join(timeout=1.0)
            for stream in (proc.stdout, proc.stderr):
                if stream is not None:
                    stream.close()

        stdout_b, stderr_b, combined_cut = self._apply_combined_limit(out_buf.value(), err_buf.value())
        truncated = out_buf.truncated or err_buf.truncated or combined_cut
        stdout = stdout_b.decode("utf-8", errors="replace")
        stderr = stderr_b.decode("utf-8", errors="replace")
        if truncated:
            stdout = f"{self._marker}{stdout}" if stdout else stdout
            stderr = f"{self._marker}{stderr}" if stderr else stderr

        duration_ms = int((time.monotonic() - started) * 1000)
        if cancelled or timed_out:
            logger.info("command %s after %sms: %s", "cancelled" if cancelled else "timed out", duration_ms, argv[0])
            return CommandResult(
                ok=False,
                stdout=stdout,
                stderr=stderr,
                duration_ms=duration_ms,
                timeout=timed_out,
                truncated=truncated,
                error_kind="cancelled" if cancelled else "timeout",
            )

        ok = proc.returncode == 0
        return CommandResult(
            ok=ok,
            exit_code=proc.returncode,
            stdout=stdout,
            stderr=stderr,
            duration_ms=duration_ms,
            truncated=truncated,
            error_kind=None if ok else "exit_code",
        )

    def _terminate(self, proc: "subprocess.Popen[bytes]") -> None:
        """终止子进程（POSIX 下整组终止）：SIGTERM → (grace) → SIGKILL。"""

        if os.name == "nt":  # pragma: no cover
            proc.terminate()
            try:
                proc.wait(timeout=self._grace_sec)
            except subprocess.TimeoutExpired:
                proc.kill()
            return

        for sig in (signal.SIGTERM, signal.SIGKILL):
            try:
                os.killpg(proc.pid, sig)
            except ProcessLookupError:
                return
            except PermissionError:
                proc.send_signal(sig)
            try:
                proc.wait(timeout=self._grace_sec)
                return
            except subprocess.TimeoutExpired:
                continue
        proc.wait()

    def _apply_combined_limit(self, stdout_b: bytes, stderr_b: bytes) -> Tuple[bytes, bytes, bool]:
        """
        对 stdout+stderr 合计字节施加上限（尾部保留）。

        策略：先从 stdout 头部丢弃，仍超出再丢 stderr 头部。
        """

        total = len(stdout_b) + len(stderr_b)
        if self._max_combined <= 0 or total <= self._max_combined:
            return stdout_b, stderr_b, False
        drop = total - self._max_combined
        cut = min(drop, len(stdout_b))
        stdout_b = stdout_b[cut:]
        drop -= cut
        if drop > 0:
            stderr_b = stderr_b[drop:]
        return stdout_b, stderr_b, True


def _safe_check(checker: Callable[[], bool]) -> bool:
    # 取消检测异常时 fail-open
    try:
        return bool(checker())
    except Exception:
        return False
