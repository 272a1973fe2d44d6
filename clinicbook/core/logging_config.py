import logging
import sys

import structlog

_MASKED_KEYS = ("patient_id", "phone", "contact")


def masking_processor(logger, method_name, event_dict):
    """Masks patient identifiers in log events."""
    for key in _MASKED_KEYS:
        if key in event_dict and event_dict[key] is not None:
            val = str(event_dict[key])
            event_dict[key] = f"{val[:2]}***{val[-2:]}" if len(val) > 5 else "***"
    return event_dict


def setup_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            masking_processor,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    log = structlog.get_logger("clinicbook")
    log.info("logging_initialized", app="clinicbook")
