"""日志初始化

structlog 与标准库 logging 共用一条处理器链，第三方库（litellm / httpx / uvicorn）
的日志也经同一个 ProcessorFormatter 渲染。

环境变量：
- AGENTMESH_LOG_FORMAT: "json" 结构化输出；其余值为 dev 控制台输出
- AGENTMESH_LOG_LEVEL: 根 logger 级别，默认 INFO
- LOGFIRE_SEND_TO_LOGFIRE: "true" 时启用 Logfire APM
"""

import logging
import os

import structlog
from fastapi import FastAPI

# 推理 / 出站调用库在 INFO 级别过于嘈杂
_NOISY_LOGGERS = ("LiteLLM", "LiteLLM Proxy", "LiteLLM Router", "httpx", "httpcore", "aiosqlite")


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer(ensure_ascii=False)
    return structlog.dev.ConsoleRenderer()


def setup_logging() -> logging.Handler:
    """配置 structlog 与根 logger，返回安装到根 logger 上的 handler"""
    log_format = os.environ.get("AGENTMESH_LOG_FORMAT", "dev").lower()
    log_level = os.environ.get("AGENTMESH_LOG_LEVEL", "INFO").upper()
    shared = _shared_processors()

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(log_format),
            ],
            foreign_pre_chain=shared,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level, logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return handler


def setup_logfire(app: FastAPI) -> None:
    """LOGFIRE_SEND_TO_LOGFIRE=true 时启用 Logfire（需要 LOGFIRE_TOKEN 与 logfire extra）

    初始化失败只记录 warning，日志仍走本地 handler。
    """
    if os.environ.get("LOGFIRE_SEND_TO_LOGFIRE", "false").lower() != "true":
        return
    try:
        import logfire

        logfire.configure()
        logfire.instrument_fastapi(app)
    except Exception as e:
        structlog.get_logger().warning("logfire_init_failed", error=str(e))
