"""
Process-wide configuration and logging setup for the print desk server.
"""

import logging
import os
import sys
from pathlib import Path

import structlog


class ServerConfig:
    """Server configuration from environment"""

    # Server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"
    VERSION = "1.0.0"

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

    # Order store: "postgres" or "memory"
    STORE_BACKEND = os.getenv("STORE_BACKEND", "postgres").lower()

    # Files
    UPLOAD_ROOT = Path(os.getenv("UPLOAD_ROOT", "uploads"))
    UPLOAD_STAGING_DIR = Path(os.getenv("UPLOAD_STAGING_DIR", "uploads/.staging"))
    MAX_FILES_PER_ORDER = int(os.getenv("MAX_FILES_PER_ORDER", "20"))


config = ServerConfig()


def configure_logging(level: int = logging.INFO, json_logs: bool = None) -> None:
    """Configure structlog once per process; JSON lines outside development."""
    if json_logs is None:
        json_logs = not ServerConfig.DEBUG

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
