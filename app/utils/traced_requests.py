import logging
from typing import Optional, Dict
from contextlib import contextmanager

from opentelemetry.trace import Tracer

from app.utils import mask_token

logger = logging.getLogger("uvicorn.error")


@contextmanager
def traced_request(
    tracer: Tracer,
    operation: str,
    session_value: Optional[str],
    start_message: str,
    extra_attrs: Optional[Dict] = None,
):
    """Open a span for one relayed request, tag it with the session and log the start."""
    with tracer.start_as_current_span(operation) as span:
        if session_value:
            span.set_attribute("relay.session", mask_token(session_value, session_value))
        if extra_attrs:
            for k, v in extra_attrs.items():
                if v is not None:
                    span.set_attribute(k, v)
        logger.info(mask_token(start_message, session_value))
        yield span
