"""
Anthropic Claude API client wrapper.

Implements the CompletionProvider protocol from core.interfaces.
"""

from .client import AnthropicCompletionClient, AnthropicConfig, create_anthropic_client

__all__ = ["AnthropicCompletionClient", "AnthropicConfig", "create_anthropic_client"]
