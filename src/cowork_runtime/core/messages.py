"""
会话消息模型（Message / Block / History）。

约定：
- Message 一旦追加进历史即不可变（pydantic frozen）。
- Block 是按 `type` 区分的 tagged union：text / image / tool_use / tool_result。
- 工具配对不变量：assistant 消息中的每个 tool_use，必须在紧随其后的 user 消息中
  有且仅有一个同 id 的 tool_result。turn loop 在每次调用模型前校验该不变量。
"""

from __future__ import annotations

import base64
import binascii
import re
from typing import Annotated, Any, Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from cowork_runtime.core.errors import FrameworkError, UserError

_DATA_URL_RE = re.compile(r"^data:(?P<media>[\w.+-]+/[\w.+-]+);base64,(?P<data>.*)$", re.DOTALL)


class TextBlock(BaseModel):
    """纯文本块。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["text"] = "text"
    text: str


class ImageBlock(BaseModel):
    """
    图片块（base64 内联）。

    字段：
    - media_type：例如 `image/png`
    - data：base64 编码后的图片字节（不含 `data:` 前缀）
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["image"] = "image"
    media_type: str
    data: str

    @classmethod
    def from_data_url(cls, url: str) -> "ImageBlock":
        """
        从 `data:<media>;base64,<payload>` 形式构造图片块。

        异常：
        - UserError：不是合法的 base64 data URL
        """

        m = _DATA_URL_RE.match(str(url or "").strip())
        if m is None:
            raise UserError("image must be a base64 data URL", code="INVALID_IMAGE")
        block = cls(media_type=m.group("media"), data=m.group("data").strip())
        block.raw_bytes()
        return block

    @classmethod
    def from_bytes(cls, raw: bytes, *, media_type: str) -> "ImageBlock":
        """从原始字节构造图片块。"""

        return cls(media_type=media_type, data=base64.b64encode(raw).decode("ascii"))

    def raw_bytes(self) -> bytes:
        """解码 base64 payload；非法内容抛 `UserError`。"""

        try:
            return base64.b64decode(self.data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise UserError(f"invalid base64 image payload: {e}", code="INVALID_IMAGE") from None

    def to_data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.data}"


class ToolUseBlock(BaseModel):
    """模型发起的工具调用（id 由模型提供，用于与 tool_result 配对）。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """
    工具结果块（回注给模型）。

    字段：
    - tool_use_id：对应的 tool_use.id
    - content：回注文本（成功输出或失败原因）
    - is_error：是否失败（含用户拒绝、闸门拒绝、取消）
    - error_kind：失败分类（invalid_arguments / execution_failed / cancelled / permission_denied）
    - images：工具产出的图片附件（例如 view_image）
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str = ""
    is_error: bool = False
    error_kind: Optional[str] = None
    images: Tuple[ImageBlock, ...] = ()


Block = Annotated[Union[TextBlock, ImageBlock, ToolUseBlock, ToolResultBlock], Field(discriminator="type")]


class Message(BaseModel):
    """
    会话消息（不可变）。

    字段：
    - role：user / assistant / system
    - content：有序 Block 序列；也接受纯字符串输入（会被规范化为单个 text block）
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    role: Literal["user", "assistant", "system"]
    content: Tuple[Block, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _coerce_plain_text(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and isinstance(data.get("content"), str):
            out = dict(data)
            out["content"] = [{"type": "text", "text": out["content"]}]
            return out
        return data

    @classmethod
    def user(cls, text: str, *, images: Sequence[ImageBlock] = ()) -> "Message":
        """构造用户消息（文本在前，图片按提交顺序在后）。"""

        blocks: List[Any] = []
        if text:
            blocks.append(TextBlock(text=text))
        blocks.extend(images)
        return cls(role="user", content=tuple(blocks))

    @property
    def text(self) -> str:
        """拼接所有 text block 的文本。"""

        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    def tool_uses(self) -> List[ToolUseBlock]:
        """按模型产出顺序返回 tool_use blocks。"""

        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    def tool_results(self) -> List[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]


def ensure_tool_results_paired(history: Sequence[Message]) -> None:
    """
    校验工具配对不变量。

    规则：
    - assistant 消息含 tool_use 时，下一条必须是 user 消息，且其 tool_result 集合与 tool_use id 一一对应
    - 不允许出现“孤儿” tool_result（没有前置 tool_use）

    异常：
    - FrameworkError(code="UNPAIRED_TOOL_USE")
    """

    expected: Optional[List[str]] = None
    for idx, msg in enumerate(history):
        results = [b.tool_use_id for b in msg.tool_results()]
        if expected is not None:
            if msg.role != "user" or sorted(results) != sorted(expected) or len(set(results)) != len(results):
                raise FrameworkError(
                    code="UNPAIRED_TOOL_USE",
                    message="tool_use blocks must be answered by exactly one tool_result in the next user message",
                    details={"index": idx, "expected": list(expected), "actual": results},
                )
        elif results:
            raise FrameworkError(
                code="UNPAIRED_TOOL_USE",
                message="tool_result without a preceding tool_use",
                details={"index": idx, "actual": results},
            )
        uses = [b.id for b in msg.tool_uses()] if msg.role == "assistant" else []
        expected = uses or None

    if expected is not None:
        raise FrameworkError(
            code="UNPAIRED_TOOL_USE",
            message="history ends with unanswered tool_use blocks",
            details={"index": len(history) - 1, "expected": list(expected)},
        )


def history_snapshot(history: Iterable[Message]) -> List[Dict[str, Any]]:
    """把历史转成 JSON-able 列表（用于 history-update 事件与会话存储）。"""

    return [m.model_dump(mode="json") for m in history]


def coerce_history(items: Iterable[Union[Message, Mapping[str, Any]]]) -> List[Message]:
    """
    把外部输入（Message 或 dict）规范化为 Message 列表，并校验工具配对。

    异常：
    - UserError(code="INVALID_HISTORY")：结构非法或配对不变量被破坏
    """

    out: List[Message] = []
    for i, item in enumerate(items):
        if isinstance(item, Message):
            out.append(item)
            continue
        try:
            out.append(Message.model_validate(item))
        except Exception as e:
            raise UserError(f"invalid message at index {i}: {e}", code="INVALID_HISTORY") from None
    try:
        ensure_tool_results_paired(out)
    except FrameworkError as e:
        raise UserError(e.message, code="INVALID_HISTORY", details=e.details) from None
    return out
