import logging

import structlog

# event dict keys that may carry the session key or a cookie header
SECRET_KEYS: "tuple[str, ...]" = ("session_key", "credential", "cookie", "authorization")


def drop_secrets(
    logger: "object", method_name: "str", event_dict: "dict"
) -> "dict":
    for key in SECRET_KEYS:
        event_dict.pop(key, None)
    return event_dict


def setup_logging(level: "str") -> "None":
    """
    configures structlog for console output. Credential-bearing
    keys are removed from every event before rendering, and httpx
    request logging is held at WARNING so request URLs and headers
    stay out of INFO output.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
    )
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            drop_secrets,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
