"""
AgentRuntime：单会话 agent 运行时的对外 façade。

职责：
- 持有权威历史（canonical history）；turn 只在 Completing 时提交，中止/失败时历史保持 turn 之前的状态
- 同一时刻最多一个活跃 turn；并发调用以 `BusyError` 拒绝
- 组装协作者：模型客户端、工具注册表/执行器、权限闸门、确认中枢、广播中枢、可选会话存储

线程模型：
- 除 `confirm_response` 外，所有方法都应在事件循环线程内调用；
  其它线程可通过 `loop.call_soon_threadsafe(runtime.abort)` 等方式转发。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Protocol, Sequence, Tuple, Union, runtime_checkable

from cowork_runtime.config.loader import RuntimeConfig
from cowork_runtime.core.broadcast import BroadcastHub, Observer
from cowork_runtime.core.contracts import ABORTED, DONE, ERROR, HISTORY_UPDATE, RuntimeEvent
from cowork_runtime.core.errors import BusyError, FrameworkError, ProviderError, UserError
from cowork_runtime.core.executor import Executor
from cowork_runtime.core.messages import ImageBlock, Message, coerce_history, history_snapshot
from cowork_runtime.core.turn_context import TurnContext, TurnState
from cowork_runtime.core.turn_loop import TurnLoop
from cowork_runtime.core.utils import new_id
from cowork_runtime.llm.protocol import ChatBackend
from cowork_runtime.safety.confirmations import ConfirmationHub
from cowork_runtime.safety.gate import PendingConfirmation, PermissionGate
from cowork_runtime.safety.permissions import InMemoryPermissionStore, PermissionRecord, PermissionStore
from cowork_runtime.skills.loader import SkillsLoader
from cowork_runtime.tools.builtin import register_builtin_tools
from cowork_runtime.tools.dispatcher import ToolDispatcher
from cowork_runtime.tools.external import ToolServerManager, register_external_tools
from cowork_runtime.tools.protocol import ToolSpec
from cowork_runtime.tools.registry import ToolExecutionContext, ToolHandler, ToolRegistry

logger = logging.getLogger(__name__)

ImageInput = Union[ImageBlock, str]


@runtime_checkable
class SessionStore(Protocol):
    """会话存储（协作方接口）：每次历史提交/替换后收到完整快照。"""

    def save_history(self, messages: List[Dict[str, Any]]) -> None:
        """保存历史快照（JSON-able）。持久化格式由实现决定。"""

        ...


@dataclass(frozen=True)
class TurnOutcome:
    """
    一个 turn 的最终结果。

    字段：
    - status：completed / aborted / failed
    - turn_id：turn 标识
    - final_text：最后一条 assistant 消息的文本（仅 completed）
    - error：失败原因（仅 failed）
    """

    status: Literal["completed", "aborted", "failed"]
    turn_id: str
    final_text: str = ""
    error: Optional[str] = None


class AgentRuntime:
    """
    单会话 agent 运行时。

    参数：
    - backend：模型客户端（ChatBackend）
    - config：运行时配置（默认使用内置默认值）
    - permission_store：权限记录存储（默认进程内存储）
    - session_store：可选；历史提交后收到快照
    - tool_servers：可选；外部工具服务器管理器（初始化时注册其工具）
    - extra_tools：可选；额外注册的 (ToolSpec, handler)
    - executor：可选；run_command 的命令执行器
    - skills：可选；skill loader（默认按 `skills.roots` 构造）
    - http_transport：可选；web_fetch 使用的 httpx transport
    """

    def __init__(
        self,
        *,
        backend: ChatBackend,
        config: Optional[RuntimeConfig] = None,
        permission_store: Optional[PermissionStore] = None,
        session_store: Optional[SessionStore] = None,
        tool_servers: Optional[ToolServerManager] = None,
        extra_tools: Sequence[Tuple[ToolSpec, ToolHandler]] = (),
        executor: Optional[Executor] = None,
        skills: Optional[SkillsLoader] = None,
        http_transport: Optional[Any] = None,
    ) -> None:
        self._config = config or RuntimeConfig()
        cfg = self._config
        root = cfg.workspace_root()
        authorized: List[Path] = [Path(p).expanduser().resolve() for p in cfg.workspace.authorized_folders]

        self._tool_ctx = ToolExecutionContext(
            workspace_root=root,
            authorized_folders=authorized,
            executor=executor or Executor(),
            skills=skills if skills is not None else SkillsLoader(cfg.skills.roots),
            network_access=cfg.workspace.network_access,
            command_timeout_ms=cfg.tools.command_timeout_ms,
            max_file_bytes=cfg.tools.max_file_bytes,
            fetch_timeout_sec=cfg.tools.fetch_timeout_sec,
            fetch_max_bytes=cfg.tools.fetch_max_bytes,
            http_transport=http_transport,
        )
        self._registry = ToolRegistry(ctx=self._tool_ctx)
        register_builtin_tools(self._registry)
        for spec, handler in extra_tools:
            self._registry.register(spec, handler)
        if tool_servers is not None:
            register_external_tools(self._registry, tool_servers)

        self._dispatcher = ToolDispatcher(registry=self._registry)
        self._gate = PermissionGate(
            get_spec=self._registry.find_spec,
            store=permission_store if permission_store is not None else InMemoryPermissionStore(),
            safety=cfg.safety,
            workspace_root=root,
            authorized_folders=authorized,
        )
        self._confirmations = ConfirmationHub()
        self._hub = BroadcastHub()
        self._session_store = session_store
        self._loop = TurnLoop(
            backend=backend,
            dispatcher=self._dispatcher,
            gate=self._gate,
            confirmations=self._confirmations,
            emit=self._emit_for_turn,
            model=cfg.model.name,
            system_prompt=cfg.model.system_prompt,
            max_tool_rounds=cfg.run.max_tool_rounds,
        )

        self._history: List[Message] = []
        self._active: Optional[TurnContext] = None

    # ---- 只读状态 ----

    @property
    def config(self) -> RuntimeConfig:
        return self._config

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def history(self) -> Tuple[Message, ...]:
        """权威历史快照（不含进行中 turn 的工作副本）。"""

        return tuple(self._history)

    @property
    def is_busy(self) -> bool:
        return self._active is not None

    @property
    def state(self) -> TurnState:
        return self._active.state if self._active is not None else TurnState.IDLE

    # ---- 事件 ----

    def attach_observer(self, observer: Observer) -> Observer:
        """注册观察者；返回值可用于 detach。"""

        return self._hub.attach(observer)

    def detach_observer(self, observer: Observer) -> bool:
        """注销观察者；未知句柄为 no-op。"""

        return self._hub.detach(observer)

    async def drain(self) -> None:
        """等待所有观察者把已发布事件消费完（事件在后台逐个投递，`publish` 不等待观察者）。"""

        await self._hub.drain()

    def _publish(self, type_: str, payload: Optional[Dict[str, Any]] = None, *, turn_id: Optional[str] = None) -> None:
        self._hub.publish(RuntimeEvent(type=type_, turn_id=turn_id, payload=dict(payload or {})))  # type: ignore[arg-type]

    def _emit_for_turn(self, ctx: TurnContext, type_: str, payload: Dict[str, Any]) -> None:
        # 已中止或已不是活跃 turn 的事件一律丢弃
        if ctx.is_cancelled or self._active is not ctx:
            return
        self._publish(type_, payload, turn_id=ctx.turn_id)

    # ---- turn ----

    def submit_message(self, content: str, *, images: Iterable[ImageInput] = ()) -> "asyncio.Task[TurnOutcome]":
        """
        开始一个 turn 并立即返回（fire-and-observe）。

        参数：
        - content：用户文本
        - images：图片（ImageBlock 或 base64 data URL）

        返回：
        - asyncio.Task：完成时给出 TurnOutcome（不会因 turn 失败而抛异常）

        异常：
        - BusyError：已有活跃 turn
        - UserError：图片不是合法的 base64 data URL
        - RuntimeError：不在运行中的事件循环内调用
        """

        loop = asyncio.get_running_loop()
        if self._active is not None:
            raise BusyError(details={"turn_id": self._active.turn_id})

        blocks = [img if isinstance(img, ImageBlock) else ImageBlock.from_data_url(img) for img in images]
        user_msg = Message.user(content, images=blocks)
        ctx = TurnContext(turn_id=new_id("turn"), working=list(self._history) + [user_msg])
        ctx.token.bind_loop(loop)
        self._active = ctx
        logger.info("turn %s started", ctx.turn_id)
        return loop.create_task(self._run_turn(ctx))

    async def send_message(self, content: str, *, images: Iterable[ImageInput] = ()) -> TurnOutcome:
        """
        开始一个 turn 并等待其结束。

        异常：
        - BusyError：已有活跃 turn
        """

        return await self.submit_message(content, images=images)

    async def _run_turn(self, ctx: TurnContext) -> TurnOutcome:
        if ctx.is_cancelled:
            return TurnOutcome(status="aborted", turn_id=ctx.turn_id)

        self._emit_for_turn(ctx, HISTORY_UPDATE, {"history": history_snapshot(ctx.working)})
        inner = ctx.track(asyncio.ensure_future(self._loop.run(ctx)))
        try:
            working = await inner
        except asyncio.CancelledError:
            if ctx.is_cancelled:
                return TurnOutcome(status="aborted", turn_id=ctx.turn_id)
            # 外层任务被取消（例如调用方取消了 send_message）：按中止处理后继续传播
            self._abort_turn(ctx)
            raise
        except (ProviderError, FrameworkError) as e:
            return self._fail_turn(ctx, e)
        except Exception as e:
            logger.exception("turn %s failed unexpectedly", ctx.turn_id)
            return self._fail_turn(ctx, e)

        if ctx.is_cancelled or self._active is not ctx:
            return TurnOutcome(status="aborted", turn_id=ctx.turn_id)

        self._history = list(working)
        self._active = None
        ctx.state = TurnState.IDLE
        self._save_session()
        self._publish(HISTORY_UPDATE, {"history": history_snapshot(self._history)}, turn_id=ctx.turn_id)
        self._publish(DONE, {}, turn_id=ctx.turn_id)
        last = self._history[-1] if self._history else None
        final_text = last.text if last is not None and last.role == "assistant" else ""
        logger.info("turn %s completed", ctx.turn_id)
        return TurnOutcome(status="completed", turn_id=ctx.turn_id, final_text=final_text)

    def _fail_turn(self, ctx: TurnContext, exc: BaseException) -> TurnOutcome:
        if ctx.is_cancelled or self._active is not ctx:
            return TurnOutcome(status="aborted", turn_id=ctx.turn_id)
        message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        logger.warning("turn %s failed: %s", ctx.turn_id, message)
        self._active = None
        ctx.cancel()
        self._confirmations.cancel(ctx.pending_confirmations)
        self._publish(HISTORY_UPDATE, {"history": history_snapshot(self._history)}, turn_id=ctx.turn_id)
        self._publish(ERROR, {"message": message}, turn_id=ctx.turn_id)
        return TurnOutcome(status="failed", turn_id=ctx.turn_id, error=message)

    def _abort_turn(self, ctx: TurnContext) -> None:
        self._active = None
        ctx.cancel()
        self._confirmations.cancel(ctx.pending_confirmations)
        self._publish(HISTORY_UPDATE, {"history": history_snapshot(self._history)}, turn_id=ctx.turn_id)
        self._publish(ABORTED, {}, turn_id=ctx.turn_id)
        logger.info("turn %s aborted", ctx.turn_id)

    def abort(self) -> bool:
        """
        中止活跃 turn（幂等）。

        说明：
        - 返回后运行时立即处于空闲状态，可以马上开始新 turn。
        - 历史回到 turn 开始前；观察者依次收到 `history-update`（回滚后的快照）与 `aborted`。

        返回：
        - True：确有活跃 turn 被中止
        - False：没有活跃 turn（no-op）
        """

        ctx = self._active
        if ctx is None:
            return False
        self._abort_turn(ctx)
        return True

    # ---- 确认 ----

    def confirm_response(self, confirmation_id: str, approved: bool, remember: bool = False) -> bool:
        """
        回答一个待确认请求（可从任意线程调用）。

        参数：
        - confirmation_id：confirm-request 事件中的 id
        - approved：是否批准
        - remember：批准时是否记住（写入权限存储，之后的 turn 对同一 (tool, path) 不再询问）

        返回：
        - True：找到并已回答
        - False：未知 id（已回答/已随 turn 中止/不存在），no-op
        """

        pending = self._confirmations.resolve(confirmation_id, approved=approved, remember=remember)
        if pending is None:
            return False
        if approved and remember:
            self._gate.remember(pending.tool, pending.path)
        return True

    def pending_confirmations(self) -> List[PendingConfirmation]:
        """列出活跃 turn 中等待回答的确认请求。"""

        if self._active is None:
            return []
        return self._confirmations.list_pending(turn_id=self._active.turn_id)

    # ---- 历史 ----

    def load_history(self, messages: Iterable[Union[Message, Mapping[str, Any]]]) -> None:
        """
        用给定消息整体替换历史。

        异常：
        - BusyError：turn 进行中
        - UserError：消息结构非法或工具配对不变量被破坏
        """

        if self._active is not None:
            raise BusyError("cannot load history while a turn is in progress")
        self._history = coerce_history(messages)
        self._publish(HISTORY_UPDATE, {"history": history_snapshot(self._history)})

    def clear_history(self) -> None:
        """清空历史（开始新会话）。turn 进行中抛 BusyError。"""

        if self._active is not None:
            raise BusyError("cannot clear history while a turn is in progress")
        self._history = []
        self._publish(HISTORY_UPDATE, {"history": []})

    def _save_session(self) -> None:
        if self._session_store is None:
            return
        try:
            self._session_store.save_history(history_snapshot(self._history))
        except Exception:
            logger.exception("session store failed to save history")

    # ---- 权限与授权目录 ----

    def list_permissions(self) -> List[PermissionRecord]:
        return self._gate.list_permissions()

    def revoke_permission(self, tool: str, path: Optional[str] = None) -> bool:
        """撤销一条已记住的授权（path=None 表示通配记录）。"""

        return self._gate.revoke(tool, path)

    def clear_permissions(self) -> None:
        self._gate.clear()

    def authorize_folder(self, folder: Union[str, Path]) -> Path:
        """
        新增授权目录（工具可访问；闸门据此限制路径）。

        返回：
        - 解析后的绝对路径
        """

        p = Path(folder).expanduser().resolve()
        if p not in self._tool_ctx.authorized_folders:
            self._tool_ctx.authorized_folders.append(p)
            logger.info("authorized folder added: %s", p)
        return p

    def authorized_folders(self) -> List[Path]:
        return list(self._tool_ctx.authorized_folders)

    @property
    def workspace_root(self) -> Path:
        return Path(self._tool_ctx.workspace_root)

    def set_working_dir(self, folder: Union[str, Path]) -> Path:
        """
        切换主工作目录（之后的 turn 生效）。

        说明：
        - 工具的相对路径与闸门的路径规范化都改以新目录为基准。
        - 原工作目录保留在授权目录列表的最前面，仍可访问；新目录若已是授权目录则从列表中移出。

        异常：
        - BusyError：turn 进行中
        - UserError：目录不存在
        """

        if self._active is not None:
            raise BusyError("cannot change the working directory while a turn is in progress")
        p = Path(folder).expanduser().resolve()
        if not p.is_dir():
            raise UserError(f"working directory does not exist: {p}", code="INVALID_WORKING_DIR")

        previous = Path(self._tool_ctx.workspace_root).resolve()
        if p == previous:
            return p
        authorized = self._tool_ctx.authorized_folders
        if p in authorized:
            authorized.remove(p)
        if previous not in authorized:
            authorized.insert(0, previous)
        self._tool_ctx.workspace_root = p
        self._gate.set_workspace_root(p)
        logger.info("working directory changed: %s -> %s", previous, p)
        return p

    async def aclose(self) -> None:
        """中止活跃 turn，投递剩余事件并注销全部观察者。"""

        self.abort()
        await self._hub.aclose()
