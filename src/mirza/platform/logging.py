"""
Simple structured logging setup using structlog directly.

No wrappers, just standard structlog configuration.
"""

import logging

import structlog

from mirza.platform.settings import get_settings


def setup_logging() -> None:
    """
    Setup structured logging with structlog.

    Uses settings from centralized configuration.
    """
    settings = get_settings()

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, settings.observability.log_level.value, logging.INFO),
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.observability.enable_correlation_ids:
        processors.insert(
            0,
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.THREAD_NAME]
            ),
        )

    # Use JSON or console output based on settings
    if settings.observability.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """
    Get a structured logger.

    Args:
        name: Logger name, defaults to caller's module name

    Returns:
        Configured structured logger
    """
    return structlog.get_logger(name)


def get_security_logger() -> structlog.BoundLogger:
    """
    Get a logger for security-relevant events.

    Rejected webhook signatures are reported here so they can be routed to
    an alerting sink separately from regular billing logs.
    """
    return structlog.get_logger("security")


def log_security_event(
    action: str,
    gateway: str | None = None,
    resource_id: str | None = None,
    **kwargs,
) -> None:
    """Log a security event as a structured log entry."""
    get_security_logger().warning(
        action,
        security_gateway=gateway,
        security_resource_id=resource_id,
        potential_attack=True,
        **kwargs,
    )


__all__ = ["setup_logging", "get_logger", "get_security_logger", "log_security_event"]
