"""Request ID propagation for log correlation.

Each scrape binds an ID (caller-supplied or a fresh UUID4) into a
contextvars.ContextVar so every log line emitted inside that scrape, in any
task spawned from it, carries the same request_id.
"""

import contextvars
import uuid
from contextlib import contextmanager

# Context variable accessible from anywhere in the same async task
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "request_id", default=""
)


@contextmanager
def bind_request_id(rid: str | None = None):
    """Bind a request ID for the duration of the block and yield it."""
    rid = rid or str(uuid.uuid4())
    token = request_id_var.set(rid)
    try:
        yield rid
    finally:
        request_id_var.reset(token)


def get_request_id() -> str:
    """Get the current request ID (empty string if not in a request context)."""
    return request_id_var.get()
