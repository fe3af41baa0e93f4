"""FastAPI 主应用 - Anthropic Messages API → Cloud Code 网关"""
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Sequence

import anyio
import httpx
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.cloudcode import CloudCodeClient, UpstreamError, anthropic_error
from src.config import Settings, load_cli_settings, settings, settings_summary
from src.constants import DEFAULT_MODEL
from src.converter import RequestConverter
from src.request_log import RequestLogger, iso_timestamp
from src.stream_transcoder import StreamTranscoder

# 配置日志
logging.basicConfig(level=logging.INFO, format="[Odin] %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def configure_app(app: FastAPI, config: Settings) -> None:
    """根据配置创建上游客户端和请求日志"""
    app.state.settings = config
    app.state.cloudcode_client = CloudCodeClient(config)
    app.state.request_logger = RequestLogger(config.log_file) if config.log_file else None


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await app.state.cloudcode_client.aclose()
    if app.state.request_logger is not None:
        app.state.request_logger.close()


app = FastAPI(
    title="Odin",
    description="将 Anthropic Messages API 转换为 Google Cloud Code 格式",
    version="1.0.0",
    lifespan=lifespan,
)

# 配置 CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

configure_app(app, settings)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_cloudcode_client(request: Request) -> CloudCodeClient:
    return request.app.state.cloudcode_client


def get_request_logger(request: Request) -> Optional[RequestLogger]:
    return request.app.state.request_logger


def error_response(status_code: int, error_type: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=anthropic_error(error_type, message))


def request_url(request: Request) -> str:
    query = request.url.query
    return f"{request.url.path}?{query}" if query else request.url.path


def parse_json_body(raw: bytes) -> Any:
    """空或无法解析的请求体返回 None"""
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


def log_incoming(request: Request, body: Any, debug: bool) -> None:
    if not debug:
        return
    logger.debug(f"Headers: {json.dumps(dict(request.headers), indent=2)}")
    if body is not None:
        logger.debug(f"Body: {json.dumps(body, indent=2, ensure_ascii=False)}")


async def record_request(
    request: Request,
    request_log: Optional[RequestLogger],
    status_code: int,
    start_time: float,
    body: Any,
    suffix: Optional[str] = None,
    response_events: Optional[List[str]] = None,
) -> None:
    """输出请求摘要行，并写入结构化请求日志"""
    url = request_url(request)
    duration_ms = int((time.monotonic() - start_time) * 1000)
    line = f"{iso_timestamp()} {request.method} {url} {status_code} {duration_ms}ms"
    logger.info(f"{line}  {suffix}" if suffix else line)

    if request_log is not None:
        await request_log.alog(
            method=request.method,
            url=url,
            status_code=status_code,
            start_time=start_time,
            headers=dict(request.headers),
            body=body,
            response_events=response_events,
        )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """未知端点统一返回 Anthropic 格式的 404"""
    start_time = time.monotonic()
    config: Settings = request.app.state.settings
    body = parse_json_body(await request.body())

    if exc.status_code in (404, 405):
        if config.debug:
            logger.debug(f"Unknown endpoint hit: {request.method} {request.url.path}")
            log_incoming(request, body, config.debug)
        await record_request(
            request, request.app.state.request_logger, 404, start_time, body,
            suffix="<- UNKNOWN ENDPOINT",
        )
        return error_response(404, "not_found_error", f"Unknown endpoint: {request.method} {request.url.path}")

    await record_request(request, request.app.state.request_logger, exc.status_code, start_time, body)
    return error_response(exc.status_code, "api_error", str(exc.detail))


@app.get("/health")
async def health_check(
    request: Request,
    request_log: Optional[RequestLogger] = Depends(get_request_logger),
):
    """健康检查"""
    start_time = time.monotonic()
    await record_request(request, request_log, 200, start_time, None)
    return {"status": "ok"}


@app.post("/")
@app.post("/api/event_logging/batch")
async def silent_ok(
    request: Request,
    request_log: Optional[RequestLogger] = Depends(get_request_logger),
):
    """客户端心跳与遥测上报，直接返回空对象"""
    start_time = time.monotonic()
    body = parse_json_body(await request.body())
    await record_request(request, request_log, 200, start_time, body)
    return {}


@app.post("/v1/messages")
async def create_message(
    request: Request,
    config: Settings = Depends(get_settings),
    client: CloudCodeClient = Depends(get_cloudcode_client),
    request_log: Optional[RequestLogger] = Depends(get_request_logger),
):
    """
    Anthropic Messages API 端点（仅支持流式）

    将请求转换为 Google 格式发往 Cloud Code，再把 SSE 响应逐帧转换回 Anthropic 格式
    """
    start_time = time.monotonic()
    body = parse_json_body(await request.body())
    log_incoming(request, body, config.debug)

    async def finish(status_code: int, response_events: Optional[List[str]] = None) -> None:
        await record_request(request, request_log, status_code, start_time, body, response_events=response_events)

    if not isinstance(body, dict):
        await finish(400)
        return error_response(400, "invalid_request_error", "Request body is required")

    if not body.get("stream"):
        await finish(400)
        return error_response(
            400,
            "invalid_request_error",
            'Only streaming mode is supported. Set "stream": true in your request.',
        )

    model = body.get("model") or DEFAULT_MODEL
    google_request = RequestConverter(config.system_instruction).anthropic_to_google({**body, "model": model})
    if config.debug:
        logger.debug(f"Converted Google request: {json.dumps(google_request, indent=2, ensure_ascii=False)}")

    try:
        upstream = await client.open_stream(google_request, model)
    except UpstreamError as e:
        status_code, payload = e.to_anthropic_error()
        await finish(status_code)
        return JSONResponse(status_code=status_code, content=payload)
    except httpx.HTTPError as e:
        logger.error(f"Error processing /v1/messages: {e}")
        await finish(500)
        return error_response(500, "api_error", f"Internal proxy error: {e}")

    transcoder = StreamTranscoder.run(upstream.aiter_lines(), model, config.debug)
    return StreamingResponse(
        stream_anthropic_events(transcoder, upstream, finish, config.debug),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


async def stream_anthropic_events(
    transcoder: StreamTranscoder,
    upstream: httpx.Response,
    finish: Callable[[int, Optional[List[str]]], Awaitable[None]],
    debug: bool,
) -> AsyncIterator[str]:
    """
    流式代理：Cloud Code SSE → Anthropic SSE

    客户端断开时生成器被关闭，finally 中停止读取上游并释放连接
    """
    response_events: Optional[List[str]] = [] if debug else None
    try:
        async for frame in transcoder:
            if response_events is not None:
                response_events.append(frame)
            yield frame
    except httpx.HTTPError as e:
        # 已经开始流式输出，只能结束流
        logger.error(f"Upstream stream failed: {e}")
    finally:
        # 客户端断开会取消当前任务，释放连接和写日志不能被取消
        with anyio.CancelScope(shield=True):
            await transcoder.aclose()
            await upstream.aclose()
            await finish(200, response_events)


def run(argv: Optional[Sequence[str]] = None) -> None:
    """命令行入口: odin --api-key=<key> [--port=<port>] [--debug] [--log-file=<path>]"""
    config = load_cli_settings(argv)
    if not config.api_key:
        logger.error("Error: --api-key is required")
        raise SystemExit(1)

    logging.getLogger().setLevel(logging.DEBUG if config.debug else logging.INFO)
    configure_app(app, config)

    logger.info(f"Server listening on http://{config.host}:{config.port}")
    for line in settings_summary(config):
        logger.info(line)

    uvicorn.run(app, host=config.host, port=config.port, log_level="debug" if config.debug else "info")


if __name__ == "__main__":
    run()
