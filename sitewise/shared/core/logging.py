import sys
import structlog
import logging
from sitewise.shared.core.config import get_settings


def pii_redactor(logger, method_name, event_dict):
    """
    Redact common PII and sensitive fields from logs.
    Batch jobs log tenant/org identifiers only; anything personal is masked here.
    """
    pii_fields = {
        "email", "user_email", "phone", "password", "token", "secret",
        "signature", "api_key", "authorization_code", "contact_name",
    }

    for field in pii_fields:
        if field in event_dict:
            event_dict[field] = "[REDACTED]"

    for container in ["metadata", "payload", "details", "extra"]:
        if container in event_dict and isinstance(event_dict[container], dict):
            for field in pii_fields:
                if field in event_dict[container]:
                    event_dict[container][field] = "[REDACTED]"

    return event_dict


def setup_logging():
    settings = get_settings()

    if settings.DEBUG:
        renderer = structlog.dev.ConsoleRenderer()
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        min_level = logging.INFO

    processors = [
        structlog.contextvars.merge_contextvars,  # correlation_id / job_type from scheduled jobs
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        pii_redactor,
        renderer
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Route stdlib logging (uvicorn, celery, sqlalchemy) through the same stream.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=min_level,
    )


def audit_log(event: str, tenant_id: str | None, org_id: str | None = None, details: dict = None):
    """
    Standardized helper for compliance-relevant events (retention, billing state).
    """
    logger = structlog.get_logger("audit")
    logger.info(
        "audit_event",
        action=event,
        tenant_id=str(tenant_id) if tenant_id else None,
        org_id=str(org_id) if org_id else None,
        metadata=details or {},
    )
