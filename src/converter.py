"""格式转换 - Anthropic Messages API ↔ Google Cloud Code"""
import logging
import uuid
from typing import Any, Dict, List, Optional

from src.constants import (
    ANTIGRAVITY_SYSTEM_INSTRUCTION,
    EMPTY_MESSAGE_PLACEHOLDER,
    STOP_END_TURN,
    STOP_TOOL_USE,
    THINKING_BUDGET_HEADROOM,
    is_thinking_model,
    map_finish_reason,
)
from src.content_blocks import ContentBlockType, convert_content_to_parts, convert_parts_to_blocks
from src.schema_sanitizer import sanitize_tool_schema

logger = logging.getLogger(__name__)


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


def unwrap_response(payload: Any) -> Dict:
    """Cloud Code 会把响应包在 {"response": {...}} 里，两种形态都接受"""
    if not isinstance(payload, dict):
        return {}
    inner = payload.get("response")
    return inner if isinstance(inner, dict) else payload


def _count(usage: Dict, key: str) -> int:
    value = usage.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


def build_usage(usage_metadata: Any) -> Dict[str, int]:
    """
    usageMetadata → Anthropic usage

    input_tokens 不含缓存命中部分，缓存命中单独报告为 cache_read_input_tokens
    """
    usage = usage_metadata if isinstance(usage_metadata, dict) else {}
    cached = _count(usage, "cachedContentTokenCount")
    return {
        "input_tokens": _count(usage, "promptTokenCount") - cached,
        "output_tokens": _count(usage, "candidatesTokenCount"),
        "cache_read_input_tokens": cached,
        "cache_creation_input_tokens": 0,
    }


class RequestConverter:
    """请求格式转换器"""

    def __init__(self, system_instruction: str = ANTIGRAVITY_SYSTEM_INSTRUCTION):
        # Cloud Code 要求每个请求都带上平台身份前言
        self.system_instruction = system_instruction

    def anthropic_to_google(self, anthropic_request: Dict) -> Dict:
        """
        将 Anthropic Messages 请求转换为 Google Gemini 格式

        只提取已知字段，cache_control 等 Anthropic 专有字段自然忽略。
        返回的 request 体不含传输信封（project / requestId 等由 cloudcode 模块包装）。
        """
        model = anthropic_request.get("model")
        google_request: Dict[str, Any] = {
            "systemInstruction": self.build_system_instruction(anthropic_request.get("system")),
            "contents": self.convert_messages(anthropic_request.get("messages")),
            "generationConfig": self.build_generation_config(anthropic_request),
        }

        tools = self.convert_tools(anthropic_request.get("tools"))
        if tools:
            google_request["tools"] = tools
            google_request["toolConfig"] = {"functionCallingConfig": {"mode": "VALIDATED"}}

        self.log_conversion_summary(model, google_request)
        return google_request

    def build_system_instruction(self, system: Any) -> Dict:
        """
        前言与用户 system 保持为独立的 part，不拼接成一个字符串

        system 可以是字符串或内容块数组（只保留 text 块）
        """
        parts: List[Dict] = [{"text": self.system_instruction}]
        if isinstance(system, str):
            if system:
                parts.append({"text": system})
        elif isinstance(system, list):
            for block in system:
                if isinstance(block, dict) and block.get("type") == ContentBlockType.TEXT.value:
                    text = block.get("text")
                    if isinstance(text, str):
                        parts.append({"text": text})
        return {"role": "user", "parts": parts}

    @staticmethod
    def convert_messages(messages: Any) -> List[Dict]:
        if not isinstance(messages, list):
            return []

        contents: List[Dict] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            parts = convert_content_to_parts(msg.get("content"))
            # Google 要求每条消息至少一个 part（例如未签名的 thinking 块全部被丢弃时）
            if not parts:
                parts = [{"text": EMPTY_MESSAGE_PLACEHOLDER}]
            contents.append({
                "role": "model" if msg.get("role") == "assistant" else "user",
                "parts": parts,
            })
        return contents

    @staticmethod
    def build_generation_config(anthropic_request: Dict) -> Dict:
        generation_config: Dict[str, Any] = {}
        max_tokens = anthropic_request.get("max_tokens")
        if max_tokens is not None:
            generation_config["maxOutputTokens"] = max_tokens
        if anthropic_request.get("temperature") is not None:
            generation_config["temperature"] = anthropic_request["temperature"]
        if anthropic_request.get("top_p") is not None:
            generation_config["topP"] = anthropic_request["top_p"]
        if anthropic_request.get("top_k") is not None:
            generation_config["topK"] = anthropic_request["top_k"]
        stop_sequences = anthropic_request.get("stop_sequences")
        if isinstance(stop_sequences, list) and stop_sequences:
            generation_config["stopSequences"] = stop_sequences

        if is_thinking_model(anthropic_request.get("model")):
            budget = RequestConverter.get_thinking_budget(anthropic_request.get("thinking"))
            thinking_config: Dict[str, Any] = {"includeThoughts": True}
            if budget:
                thinking_config["thinkingBudget"] = budget
            generation_config["thinkingConfig"] = thinking_config

            # maxOutputTokens 必须大于 thinkingBudget
            if budget and isinstance(max_tokens, int) and max_tokens <= budget:
                generation_config["maxOutputTokens"] = budget + THINKING_BUDGET_HEADROOM

        return generation_config

    @staticmethod
    def get_thinking_budget(thinking: Any) -> Optional[int]:
        if not isinstance(thinking, dict):
            return None
        budget = thinking.get("budget_tokens")
        if isinstance(budget, bool) or not isinstance(budget, int) or budget <= 0:
            return None
        return budget

    @staticmethod
    def convert_tools(anthropic_tools: Any) -> List[Dict]:
        """
        将 Anthropic 格式的 tools 转换为 Google Gemini 格式

        Anthropic 格式:
        [{
            "name": "get_weather",
            "description": "...",
            "input_schema": {...}
        }]

        Gemini 格式:
        [{
            "functionDeclarations": [{
                "name": "get_weather",
                "description": "...",
                "parameters": {...}
            }]
        }]
        """
        if not isinstance(anthropic_tools, list) or not anthropic_tools:
            return []

        declarations: List[Dict] = []
        for tool in anthropic_tools:
            if not isinstance(tool, dict):
                continue
            declarations.append({
                "name": tool.get("name"),
                "description": tool.get("description") or "",
                "parameters": sanitize_tool_schema(tool.get("input_schema")),
            })

        if not declarations:
            return []
        return [{"functionDeclarations": declarations}]

    @staticmethod
    def log_conversion_summary(model: Optional[str], google_request: Dict) -> None:
        """
        打印一次请求转换的摘要，帮助排查 400 问题
        """
        if not logger.isEnabledFor(logging.DEBUG):
            return
        roles = [content.get("role") for content in google_request.get("contents", [])]
        tools = [
            decl.get("name")
            for tool in google_request.get("tools", [])
            for decl in tool.get("functionDeclarations", [])
        ]
        logger.debug("Conversion summary - model=%s roles=%s", model, roles)
        logger.debug(
            "Conversion summary - tools=%s, generationConfig=%s",
            tools or "none",
            google_request.get("generationConfig"),
        )


class ResponseConverter:
    """响应格式转换器（非流式）"""

    @staticmethod
    def google_to_anthropic(google_response: Any, model: Optional[str]) -> Dict:
        """
        将完整的 Google 响应转换为 Anthropic Messages 响应

        stop_reason 优先级与流式一致：tool_use > max_tokens > end_turn
        """
        response = unwrap_response(google_response)
        candidates = response.get("candidates")
        first_candidate = candidates[0] if isinstance(candidates, list) and candidates else {}
        if not isinstance(first_candidate, dict):
            first_candidate = {}
        content = first_candidate.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None

        blocks = [
            block for block in convert_parts_to_blocks(parts)
            if block["type"] in (
                ContentBlockType.TEXT.value,
                ContentBlockType.THINKING.value,
                ContentBlockType.TOOL_USE.value,
            )
        ]

        if any(block["type"] == ContentBlockType.TOOL_USE.value for block in blocks):
            stop_reason = STOP_TOOL_USE
        elif first_candidate.get("finishReason"):
            stop_reason = map_finish_reason(first_candidate.get("finishReason"))
        else:
            stop_reason = STOP_END_TURN

        return {
            "id": new_message_id(),
            "type": "message",
            "role": "assistant",
            "content": blocks or [{"type": ContentBlockType.TEXT.value, "text": ""}],
            "model": model,
            "stop_reason": stop_reason,
            "stop_sequence": None,
            "usage": build_usage(response.get("usageMetadata")),
        }
