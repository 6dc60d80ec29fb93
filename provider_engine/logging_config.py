import logging
import json
import sys
from datetime import datetime, timezone
import os

# Context attributes promoted to top-level JSON keys
_CONTEXT_FIELDS = ('provider', 'endpoint', 'status_code', 'latency_ms', 'attempt', 'error_kind')

_RESERVED_ATTRS = frozenset((
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
    'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'getMessage', 'taskName', 'message', 'provider_tag',
) + _CONTEXT_FIELDS)


class StructuredJSONFormatter(logging.Formatter):
    """Formatter for structured JSON logging (one JSON object per line)"""

    def __init__(self, service_name: str = "provider-engine"):
        super().__init__()
        self.service_name = service_name
        self.hostname = os.environ.get('HOSTNAME', 'localhost')

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "service": self.service_name,
            "hostname": self.hostname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field_name in _CONTEXT_FIELDS:
            if hasattr(record, field_name):
                log_entry[field_name] = getattr(record, field_name)

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info)
            }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_entry.setdefault("extra", {})[key] = value

        return json.dumps(log_entry, default=str, separators=(',', ':'))


class DevelopmentFormatter(logging.Formatter):
    """Human-readable formatter; records carrying a provider get a [provider] tag"""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s | %(levelname)8s | %(name)28s | %(provider_tag)s%(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        provider = getattr(record, 'provider', None)
        record.provider_tag = f"[{provider}] " if provider else ""
        return super().format(record)


def setup_logging(
    level: str = "INFO",
    use_json: bool = None,
    service_name: str = "provider-engine"
) -> None:
    """Setup logging configuration for the provider engine service"""

    if use_json is None:
        use_json = (
            os.environ.get('APP_ENV') == 'production' or
            os.environ.get('LOG_FORMAT', '').lower() == 'json'
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(StructuredJSONFormatter(service_name) if use_json else DevelopmentFormatter())
    root_logger.addHandler(console_handler)

    configure_engine_loggers(level)

    logger = logging.getLogger(__name__)
    logger.info(
        "Logging configured",
        extra={
            "log_format": "json" if use_json else "development",
            "log_level": level,
            "service": service_name
        }
    )


def configure_engine_loggers(level: str) -> None:
    """Engine loggers follow the configured level; HTTP client chatter stays at WARNING"""
    logging.getLogger('provider_engine').setLevel(getattr(logging, level.upper()))

    for noisy in ('httpx', 'httpcore', 'asyncio', 'redis'):
        logging.getLogger(noisy).setLevel(logging.WARNING)


class ProviderLoggerAdapter(logging.LoggerAdapter):
    """Stamps the provider name on every record; explicit extras win"""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


def get_provider_logger(name: str, provider: str) -> logging.LoggerAdapter:
    return ProviderLoggerAdapter(logging.getLogger(name), {'provider': provider})
