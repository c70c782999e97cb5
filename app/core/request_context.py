"""Per-request context used to tag log records."""

from contextvars import ContextVar

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
conversation_id_var: ContextVar[int | None] = ContextVar("conversation_id", default=None)


def set_request_id(request_id: str | None) -> None:
    """Set the request id for the current context."""
    request_id_var.set(request_id)


def get_request_id() -> str | None:
    return request_id_var.get()


def set_conversation_context(conversation_id: int | None) -> None:
    """Set the conversation being processed.

    Args:
        conversation_id: Conversation ID, or None to clear
    """
    conversation_id_var.set(conversation_id)


def get_conversation_context() -> int | None:
    return conversation_id_var.get()
