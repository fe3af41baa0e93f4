"""流式转换 - Cloud Code SSE → Anthropic SSE"""
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Deque, Dict, List, Optional

from src.constants import STOP_END_TURN, STOP_TOOL_USE, has_valid_signature, map_finish_reason
from src.content_blocks import new_tool_use_id
from src.converter import new_message_id, unwrap_response

logger = logging.getLogger(__name__)


def format_sse(event: str, data: Dict) -> str:
    """event: <name>\\ndata: <json>\\n\\n"""
    payload = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    return f"event: {event}\ndata: {payload}\n\n"


class BlockKind(str, Enum):
    """当前打开的内容块类型"""
    NONE = "none"
    TEXT = "text"
    THINKING = "thinking"
    TOOL_USE = "tool_use"


@dataclass
class StreamState:
    """单个流的状态，只由所属的 StreamTranscoder 修改"""
    message_id: str = field(default_factory=new_message_id)
    block_index: int = 0
    block_kind: BlockKind = BlockKind.NONE
    prompt_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    stop_reason: Optional[str] = None
    message_started: bool = False
    finished: bool = False


class StreamTranscoder:
    """
    将 Cloud Code 的 SSE 行流逐帧转换为 Anthropic SSE 帧

    用法:
        transcoder = StreamTranscoder(response.aiter_lines(), model)
        async for frame in transcoder:
            ...

    行的切分与 UTF-8 解码由 httpx 完成，这里只处理完整的行。
    message_start 延迟到收到第一个 part 时发出；同一时刻最多一个打开的块；
    每个 functionCall 独占一个块；无法解析的行直接跳过。
    上游读取失败（httpx.HTTPError 等）原样抛出，由调用方处理。
    """

    def __init__(
        self,
        lines: Optional[AsyncIterable[str]],
        model: Optional[str],
        debug: bool = False,
    ):
        self.model = model
        self.debug = debug
        self.state = StreamState()
        self._lines = lines
        self._iterator: Optional[AsyncIterator[str]] = None
        self._pending: Deque[str] = deque()
        self._eof = False
        self._closed = False

    @classmethod
    def run(
        cls,
        lines: Optional[AsyncIterable[str]],
        model: Optional[str],
        debug: bool = False,
    ) -> "StreamTranscoder":
        return cls(lines, model, debug)

    def __aiter__(self) -> "StreamTranscoder":
        return self

    async def __anext__(self) -> str:
        frame = await self.next_frame()
        if frame is None:
            raise StopAsyncIteration
        return frame

    async def next_frame(self) -> Optional[str]:
        """返回下一帧；流结束（或已关闭）时返回 None"""
        while not self._pending:
            if self._closed or self._eof:
                return None
            await self._pull()
        if self._closed:
            return None
        return self._pending.popleft()

    async def aclose(self) -> None:
        """停止读取上游，并释放上游迭代器"""
        if self._closed:
            return
        self._closed = True
        self._pending.clear()
        source = self._iterator if self._iterator is not None else self._lines
        close = getattr(source, "aclose", None)
        if close is not None:
            await close()

    async def _pull(self) -> None:
        if self._iterator is None:
            if self._lines is None:
                self._end_of_stream()
                return
            self._iterator = self._lines.__aiter__()

        try:
            line = await self._iterator.__anext__()
        except StopAsyncIteration:
            self._end_of_stream()
            return
        self._pending.extend(self.process_line(line))

    def _end_of_stream(self) -> None:
        self._eof = True
        self._pending.extend(self.finish())

    # ------------------------------------------------------------------
    # 同步状态机
    # ------------------------------------------------------------------

    def process_line(self, line: str) -> List[str]:
        """处理一行 SSE，返回需要发出的帧（非 data 行、空行、坏 JSON 返回 []）"""
        line = line.rstrip("\r")
        if not line.startswith("data:"):
            return []
        json_text = line[5:].strip()
        if not json_text:
            return []

        if self.debug:
            logger.debug("← SSE: %s", line)

        try:
            payload = json.loads(json_text)
        except json.JSONDecodeError as exc:
            if self.debug:
                logger.debug("← SSE parse error: %s", exc)
            return []
        if not isinstance(payload, dict):
            return []
        return self.process_chunk(payload)

    def process_chunk(self, payload: Dict) -> List[str]:
        response = unwrap_response(payload)
        self._update_usage(response.get("usageMetadata"))

        candidates = response.get("candidates")
        candidate = candidates[0] if isinstance(candidates, list) and candidates else {}
        if not isinstance(candidate, dict):
            candidate = {}
        content = candidate.get("content")
        raw_parts = content.get("parts") if isinstance(content, dict) else None
        parts = [part for part in raw_parts if isinstance(part, dict)] if isinstance(raw_parts, list) else []

        frames: List[str] = []
        if parts and not self.state.message_started:
            frames.append(self._message_start())

        for part in parts:
            frames.extend(self._process_part(part))

        finish_reason = candidate.get("finishReason")
        if finish_reason and self.state.stop_reason is None:
            self.state.stop_reason = map_finish_reason(finish_reason)

        return self._emit(frames)

    def finish(self) -> List[str]:
        """关闭打开的块，发出 message_delta 与 message_stop（只执行一次）"""
        if self.state.finished:
            return []
        self.state.finished = True

        frames: List[str] = []
        if not self.state.message_started:
            frames.append(self._message_start())
        frames.extend(self._close_block())
        frames.append(format_sse("message_delta", {
            "type": "message_delta",
            "delta": {"stop_reason": self.state.stop_reason or STOP_END_TURN, "stop_sequence": None},
            "usage": {
                "output_tokens": self.state.output_tokens,
                "cache_read_input_tokens": self.state.cache_read_tokens,
                "cache_creation_input_tokens": 0,
            },
        }))
        frames.append(format_sse("message_stop", {"type": "message_stop"}))
        return self._emit(frames)

    def _emit(self, frames: List[str]) -> List[str]:
        if self.debug:
            for frame in frames:
                logger.debug("→ SSE: %s", frame.rstrip())
        return frames

    def _update_usage(self, usage_metadata: Any) -> None:
        # 0 或缺失不覆盖之前的值
        if not isinstance(usage_metadata, dict):
            return
        for key, attr in (
            ("promptTokenCount", "prompt_tokens"),
            ("candidatesTokenCount", "output_tokens"),
            ("cachedContentTokenCount", "cache_read_tokens"),
        ):
            value = usage_metadata.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not value:
                continue
            setattr(self.state, attr, int(value))

    def _message_start(self) -> str:
        self.state.message_started = True
        return format_sse("message_start", {
            "type": "message_start",
            "message": {
                "id": self.state.message_id,
                "type": "message",
                "role": "assistant",
                "content": [],
                "model": self.model,
                "stop_reason": None,
                "stop_sequence": None,
                "usage": {
                    "input_tokens": self.state.prompt_tokens - self.state.cache_read_tokens,
                    "output_tokens": 0,
                    "cache_read_input_tokens": self.state.cache_read_tokens,
                    "cache_creation_input_tokens": 0,
                },
            },
        })

    def _process_part(self, part: Dict) -> List[str]:
        if part.get("thought") is True:
            return self._process_thinking(part)
        if "text" in part:
            return self._process_text(part)
        if isinstance(part.get("functionCall"), dict):
            return self._process_function_call(part["functionCall"])
        return []

    def _process_thinking(self, part: Dict) -> List[str]:
        text = part.get("text")
        frames: List[str] = []
        if self.state.block_kind != BlockKind.THINKING:
            frames.extend(self._open_block(BlockKind.THINKING, {"type": "thinking", "thinking": ""}))
        frames.append(self._delta({"type": "thinking_delta", "thinking": text if isinstance(text, str) else ""}))

        signature = part.get("thoughtSignature")
        if has_valid_signature(signature):
            frames.append(self._delta({"type": "signature_delta", "signature": signature}))
        return frames

    def _process_text(self, part: Dict) -> List[str]:
        text = part.get("text")
        frames: List[str] = []
        if self.state.block_kind != BlockKind.TEXT:
            frames.extend(self._open_block(BlockKind.TEXT, {"type": "text", "text": ""}))
        frames.append(self._delta({"type": "text_delta", "text": text if isinstance(text, str) else ""}))
        return frames

    def _process_function_call(self, function_call: Dict) -> List[str]:
        # 每个工具调用独占一个块，即使前一个块也是 tool_use
        self.state.stop_reason = STOP_TOOL_USE
        args = function_call.get("args")
        frames = self._open_block(BlockKind.TOOL_USE, {
            "type": "tool_use",
            "id": function_call.get("id") or new_tool_use_id(),
            "name": function_call.get("name"),
            "input": {},
        })
        frames.append(self._delta({
            "type": "input_json_delta",
            "partial_json": json.dumps(args if isinstance(args, dict) else {}, ensure_ascii=False, separators=(",", ":")),
        }))
        return frames

    def _open_block(self, kind: BlockKind, content_block: Dict) -> List[str]:
        frames = self._close_block()
        self.state.block_kind = kind
        frames.append(format_sse("content_block_start", {
            "type": "content_block_start",
            "index": self.state.block_index,
            "content_block": content_block,
        }))
        return frames

    def _close_block(self) -> List[str]:
        if self.state.block_kind == BlockKind.NONE:
            return []
        frame = format_sse("content_block_stop", {"type": "content_block_stop", "index": self.state.block_index})
        self.state.block_kind = BlockKind.NONE
        self.state.block_index += 1
        return [frame]

    def _delta(self, delta: Dict) -> str:
        return format_sse("content_block_delta", {
            "type": "content_block_delta",
            "index": self.state.block_index,
            "delta": delta,
        })
