"""请求日志模块 - 每个请求一行 NDJSON"""
import json
import logging
import os
import threading
import time
from datetime import datetime, timezone
from typing import IO, Any, Dict, List, Optional

from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)


def iso_timestamp() -> str:
    """2024-01-01T00:00:00.000Z"""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


class RequestLogger:
    """
    结构化请求日志（追加写入）

    文件和目录在第一次写入时创建；写入失败只记录错误，不影响请求本身。
    异步代码中使用 alog，文件写入在线程池中执行，不阻塞事件循环。
    """

    def __init__(self, file_path: str):
        self.file_path = file_path
        self._file: Optional[IO[str]] = None
        self._lock = threading.Lock()

    def _open(self) -> IO[str]:
        if self._file is None:
            directory = os.path.dirname(self.file_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            self._file = open(self.file_path, "a", encoding="utf-8")
        return self._file

    def log(
        self,
        method: str,
        url: str,
        status_code: int,
        start_time: float,
        headers: Dict[str, str],
        body: Any = None,
        response_events: Optional[List[str]] = None,
    ) -> None:
        """
        写入一条请求记录

        start_time 为 time.monotonic() 的返回值
        """
        entry: Dict[str, Any] = {
            "timestamp": iso_timestamp(),
            "method": method,
            "path": url.split("?", 1)[0],
            "url": url,
            "statusCode": status_code,
            "durationMs": int((time.monotonic() - start_time) * 1000),
            "headers": headers,
            "body": body,
        }
        if response_events is not None:
            entry["responseEvents"] = response_events

        line = json.dumps(entry, ensure_ascii=False) + "\n"
        with self._lock:
            try:
                log_file = self._open()
                log_file.write(line)
                log_file.flush()
            except OSError as e:
                logger.error(f"Log file write error: {e}")

    async def alog(self, *args: Any, **kwargs: Any) -> None:
        """在线程池中执行 log（参数与 log 相同）"""
        await run_in_threadpool(self.log, *args, **kwargs)

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                try:
                    self._file.close()
                except OSError as e:
                    logger.error(f"Failed to close log file: {e}")
                self._file = None
