"""Generation endpoint client."""

from .endpoint import ChatEndpoint, EndpointConfig, EndpointError, message_content, with_timeout_retry

__all__ = ["ChatEndpoint", "EndpointConfig", "EndpointError", "message_content", "with_timeout_retry"]
