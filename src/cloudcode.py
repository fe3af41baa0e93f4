"""Cloud Code API 客户端 - 传输信封、请求头与流式调用"""
import json
import logging
import platform
import uuid
from typing import Any, Dict, Optional, Tuple

import httpx

from src.config import Settings, settings
from src.constants import INTERLEAVED_THINKING_BETA, STREAM_GENERATE_PATH, is_thinking_model

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "antigravity"
GOOG_API_CLIENT = "google-cloud-sdk vscode_cloudshelleditor/0.1"
CLIENT_METADATA = {
    "ideType": "IDE_UNSPECIFIED",
    "platform": "PLATFORM_UNSPECIFIED",
    "pluginType": "GEMINI",
}

# 上游状态码 → (返回给客户端的状态码, Anthropic 错误类型)
UPSTREAM_ERROR_MAP = {
    400: (400, "invalid_request_error"),
    401: (401, "authentication_error"),
    403: (401, "authentication_error"),
    429: (429, "rate_limit_error"),
}


def anthropic_error(error_type: str, message: str) -> Dict[str, Any]:
    return {"type": "error", "error": {"type": error_type, "message": message}}


class UpstreamError(Exception):
    """Cloud Code 返回非 2xx"""

    def __init__(self, status_code: int, message: str, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.body = body

    @classmethod
    def from_body(cls, status_code: int, body: str) -> "UpstreamError":
        """从错误响应体提取 error.message / message，否则使用原始文本"""
        message = body or f"Cloud Code API error: {status_code}"
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, TypeError):
            payload = None
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict) and error.get("message"):
                message = str(error["message"])
            elif payload.get("message"):
                message = str(payload["message"])
        return cls(status_code, message, body)

    def to_anthropic_error(self) -> Tuple[int, Dict[str, Any]]:
        status_code, error_type = UPSTREAM_ERROR_MAP.get(self.status_code, (500, "api_error"))
        return status_code, anthropic_error(error_type, self.message)


def user_agent(client_version: str) -> str:
    return f"antigravity/{client_version} {platform.system().lower()}/{platform.machine().lower()}"


def build_headers(api_key: str, model: Optional[str], client_version: Optional[str] = None) -> Dict[str, str]:
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "User-Agent": user_agent(client_version or settings.client_version),
        "X-Goog-Api-Client": GOOG_API_CLIENT,
        "Client-Metadata": json.dumps(CLIENT_METADATA, separators=(",", ":")),
    }
    if is_thinking_model(model):
        headers["anthropic-beta"] = INTERLEAVED_THINKING_BETA
    return headers


def build_cloudcode_payload(google_request: Dict[str, Any], model: str, project_id: str) -> Dict[str, Any]:
    """
    将 Gemini 请求包装为 Cloud Code 内部请求格式
    """
    return {
        "project": project_id,
        "model": model,
        "request": google_request,
        "userAgent": DEFAULT_USER_AGENT,
        "requestType": "agent",
        "requestId": f"agent-{uuid.uuid4()}",
    }


class CloudCodeClient:
    """
    Cloud Code 流式调用

    open_stream 返回已打开的 httpx.Response（调用方负责 aclose）；
    网络错误以 httpx.HTTPError 抛出，非 2xx 以 UpstreamError 抛出。
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or settings
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def stream_url(self) -> str:
        return f"{self.config.cloudcode_endpoint.rstrip('/')}{STREAM_GENERATE_PATH}"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.config.request_timeout, transport=self._transport)
        return self._client

    async def open_stream(self, google_request: Dict[str, Any], model: str) -> httpx.Response:
        headers = build_headers(self.config.api_key, model, self.config.client_version)
        payload = build_cloudcode_payload(google_request, model, self.config.project_id)
        url = self.stream_url

        if self.config.debug:
            logger.debug("→ Cloud Code: %s", url)
            logger.debug("→ Headers: %s", json.dumps(headers, indent=2))
            logger.debug("→ Payload: %s", json.dumps(payload, indent=2, ensure_ascii=False))

        client = self._get_client()
        request = client.build_request("POST", url, headers=headers, json=payload)
        response = await client.send(request, stream=True)

        if response.is_success:
            return response

        try:
            error_body = (await response.aread()).decode("utf-8", errors="ignore")
        finally:
            await response.aclose()
        logger.error(f"Cloud Code API error {response.status_code}")
        if self.config.debug:
            logger.debug(f"Error response: {error_body}")
        raise UpstreamError.from_body(response.status_code, error_body)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
