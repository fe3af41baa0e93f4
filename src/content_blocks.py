"""内容块转换 - Anthropic content blocks ↔ Google parts"""
import json
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from src.constants import has_valid_signature

logger = logging.getLogger(__name__)


class ContentBlockType(str, Enum):
    """请求侧识别的 Anthropic 内容块类型"""
    TEXT = "text"
    IMAGE = "image"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    THINKING = "thinking"


def new_tool_use_id() -> str:
    return f"toolu_{uuid.uuid4().hex[:24]}"


def extract_text_content(content: Any) -> str:
    """
    提取 tool_result.content 中的文本

    支持:
    - 纯文本: "42"
    - 内容块数组: [{"type": "text", "text": "42"}, ...]（仅保留 text 块，换行拼接）
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            str(block.get("text") or "")
            for block in content
            if isinstance(block, dict) and block.get("type") == ContentBlockType.TEXT.value
        )
    return ""


def _text_to_part(block: Dict) -> Optional[Dict]:
    text = block.get("text")
    if not isinstance(text, str) or not text.strip():
        return None
    return {"text": text}


def _image_to_part(block: Dict) -> Optional[Dict]:
    source = block.get("source")
    if not isinstance(source, dict) or source.get("type") != "base64":
        return None
    return {
        "inlineData": {
            "mimeType": source.get("media_type"),
            "data": source.get("data"),
        }
    }


def _tool_use_to_part(block: Dict) -> Optional[Dict]:
    tool_input = block.get("input")
    return {
        "functionCall": {
            "id": block.get("id"),
            "name": block.get("name"),
            "args": tool_input if isinstance(tool_input, dict) else {},
        }
    }


def _tool_result_to_part(block: Dict) -> Optional[Dict]:
    # name 使用 tool_use_id：上游按 id 匹配 functionCall
    tool_use_id = block.get("tool_use_id")
    return {
        "functionResponse": {
            "id": tool_use_id,
            "name": tool_use_id,
            "response": {"result": extract_text_content(block.get("content"))},
        }
    }


def _thinking_to_part(block: Dict) -> Optional[Dict]:
    signature = block.get("signature")
    if not has_valid_signature(signature):
        return None
    return {
        "text": block.get("thinking", ""),
        "thought": True,
        "thoughtSignature": signature,
    }


_BLOCK_CONVERTERS: Dict[ContentBlockType, Callable[[Dict], Optional[Dict]]] = {
    ContentBlockType.TEXT: _text_to_part,
    ContentBlockType.IMAGE: _image_to_part,
    ContentBlockType.TOOL_USE: _tool_use_to_part,
    ContentBlockType.TOOL_RESULT: _tool_result_to_part,
    ContentBlockType.THINKING: _thinking_to_part,
}


def _block_type(block: Any) -> Optional[ContentBlockType]:
    if not isinstance(block, dict):
        return None
    try:
        return ContentBlockType(block.get("type"))
    except (TypeError, ValueError):
        return None


def convert_content_to_parts(content: Any) -> List[Dict]:
    """
    将 Anthropic 的 content 字段转换为 Gemini 的 parts 数组

    只提取已知字段（cache_control 等自然忽略），未知类型的块直接跳过。
    结果可能为空列表，由调用方补占位 part。
    """
    if isinstance(content, str):
        return [{"text": content}]
    if content is None:
        return []
    if not isinstance(content, list):
        return [{"text": str(content)}]

    parts: List[Dict] = []
    for block in content:
        block_type = _block_type(block)
        if block_type is None:
            logger.debug("Skipping unsupported content block: %r", block.get("type") if isinstance(block, dict) else block)
            continue
        part = _BLOCK_CONVERTERS[block_type](block)
        if part is not None:
            parts.append(part)
    return parts


def convert_parts_to_blocks(parts: Any) -> List[Dict]:
    """
    将 Gemini 的 parts 数组转换回 Anthropic 内容块

    - thought=True 的文本 → thinking
    - text → text
    - functionCall → tool_use
    - functionResponse → tool_result
    - inlineData → image (base64)
    """
    if not isinstance(parts, list):
        return []

    blocks: List[Dict] = []
    for part in parts:
        if not isinstance(part, dict):
            continue
        if "text" in part:
            if part.get("thought") is True:
                blocks.append({
                    "type": ContentBlockType.THINKING.value,
                    "thinking": part.get("text") or "",
                    "signature": part.get("thoughtSignature") or "",
                })
            else:
                blocks.append({"type": ContentBlockType.TEXT.value, "text": part.get("text") or ""})
        elif isinstance(part.get("functionCall"), dict):
            func_call = part["functionCall"]
            args = func_call.get("args")
            blocks.append({
                "type": ContentBlockType.TOOL_USE.value,
                "id": func_call.get("id") or new_tool_use_id(),
                "name": func_call.get("name", ""),
                "input": args if isinstance(args, dict) else {},
            })
        elif isinstance(part.get("functionResponse"), dict):
            func_response = part["functionResponse"]
            response = func_response.get("response")
            if isinstance(response, dict) and isinstance(response.get("result"), str):
                result = response["result"]
            else:
                result = json.dumps(response, ensure_ascii=False) if response is not None else ""
            blocks.append({
                "type": ContentBlockType.TOOL_RESULT.value,
                "tool_use_id": func_response.get("id") or func_response.get("name", ""),
                "content": result,
            })
        elif isinstance(part.get("inlineData"), dict):
            inline = part["inlineData"]
            blocks.append({
                "type": ContentBlockType.IMAGE.value,
                "source": {
                    "type": "base64",
                    "media_type": inline.get("mimeType"),
                    "data": inline.get("data"),
                },
            })
    return blocks
