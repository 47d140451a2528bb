import json
import logging
import os
import re
import sys
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional


LOGGER_NAME = "chat-stream"
DEFAULT_LOG_PATH = os.path.join("logs", "chat-stream.log")
OUTPUT_MODES = ("none", "segment", "final", "both")

# 脱敏规则：邮箱、手机号/长数字串、键名后的密钥值
_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_PHONE_RE = re.compile(r"\b(\+?\d[\d\- ]{7,}\d)\b")
_SECRET_RE = re.compile(r"(?i)\b(api[_-]?key|token|secret|password)\b\s*[:=]\s*([A-Za-z0-9\-_/]{8,})")


def setup_logger(name: str = LOGGER_NAME) -> logging.Logger:
    """
    初始化日志记录器，支持控制台与按大小滚动的文件输出。

    输入：
        name: 记录器名称，默认 `chat-stream`

    输出：
        logging.Logger：配置好的日志记录器（重复调用不会重复添加 handler）。

    关键逻辑：
        - LOG_LEVEL：日志等级，默认 INFO；
        - LOG_TO_FILE=1 时追加 RotatingFileHandler：
            - LOG_FILE_PATH：默认 `logs/chat-stream.log`；
            - LOG_MAX_BYTES：单文件最大字节数，默认 10MB；
            - LOG_BACKUP_COUNT：保留文件个数，默认 5；
        - 文件 handler 创建失败时仅保留控制台输出。
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level_value = getattr(logging, level_name, logging.INFO)
    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level_value)
    console.setFormatter(formatter)
    logger.addHandler(console)

    to_file = os.environ.get("LOG_TO_FILE", "0") == "1"
    log_path = os.environ.get("LOG_FILE_PATH", DEFAULT_LOG_PATH)
    if to_file:
        try:
            log_dir = os.path.dirname(log_path)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_path,
                maxBytes=int(os.environ.get("LOG_MAX_BYTES", "10485760")),
                backupCount=int(os.environ.get("LOG_BACKUP_COUNT", "5")),
                encoding="utf-8",
            )
            file_handler.setLevel(level_value)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except (OSError, ValueError) as e:
            logger.warning(f"logger.file.disabled | {e}")

    logger.setLevel(level_value)
    log_json(
        logger,
        logging.INFO,
        "logger.init",
        log_level=level_name,
        to_file=to_file,
        path=log_path if to_file else None,
        content=get_content_log_config(),
    )
    return logger


def log_json(logger: logging.Logger, level: int, message: str, **kwargs: Any) -> None:
    """
    以 `message | {json}` 形式记录结构化日志，便于检索。

    输入：
        logger: 日志记录器
        level: 日志级别，如 logging.INFO
        message: 事件名称，如 segment.emit
        **kwargs: 上下文字段，如 requestId、sessionId、长度等
    """
    if not logger.isEnabledFor(level):
        return
    try:
        context = json.dumps(kwargs, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        context = f"context={kwargs}"
    logger.log(level, f"{message} | {context}")


def get_content_log_config() -> Dict[str, Any]:
    """
    读取内容日志相关配置。

    输出：
        Dict：
          - include_input: bool 是否记录用户输入预览
          - include_output: str 输出记录模式（none|segment|final|both）
          - max_chars: int 单条内容最大记录字符数
          - redact: bool 是否启用基础脱敏
    """
    include_output = os.environ.get("LOG_INCLUDE_OUTPUT", "none").lower()
    if include_output not in OUTPUT_MODES:
        include_output = "none"
    try:
        max_chars = int(os.environ.get("LOG_CONTENT_MAX_CHARS", "1000"))
    except ValueError:
        max_chars = 1000
    return {
        "include_input": os.environ.get("LOG_INCLUDE_INPUT", "0") == "1",
        "include_output": include_output,
        "max_chars": max_chars,
        "redact": os.environ.get("LOG_REDACT_ENABLED", "0") == "1",
    }


def _mask_email(m: re.Match) -> str:
    name, _, domain = m.group(0).partition("@")
    masked_name = (name[0] + "***") if name else "***"
    masked_domain = (domain.split(".")[0][:1] + "***") if domain else "***"
    return f"{masked_name}@{masked_domain}"


def redact_text(text: str) -> str:
    """基础脱敏：邮箱、手机号/长数字串、api_key/token/secret/password 的值。"""
    text = _EMAIL_RE.sub(_mask_email, text)
    text = _PHONE_RE.sub(lambda m: m.group(0)[:3] + "***" + m.group(0)[-2:], text)
    return _SECRET_RE.sub(lambda m: m.group(1) + "=***", text)


def build_preview(text: Optional[str], max_chars: int, redact: bool) -> Dict[str, Any]:
    """
    构造内容预览。

    输出：
        Dict：{"text_len": int, "preview": str}，超长内容截断并追加 `…(truncated)`。
    """
    if not text:
        return {"text_len": 0, "preview": ""}
    src = redact_text(text) if redact else text
    if len(src) > max_chars:
        return {"text_len": len(text), "preview": src[:max_chars] + "…(truncated)"}
    return {"text_len": len(text), "preview": src}
