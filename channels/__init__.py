"""Outbound delivery to the messaging gateway."""
from channels.dispatcher import (
    Dispatcher,
    DispatchError,
    HttpDispatcher,
    extract_error_message,
)

__all__ = ["Dispatcher", "DispatchError", "HttpDispatcher", "extract_error_message"]
