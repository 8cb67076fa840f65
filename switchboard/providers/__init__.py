"""
Provider transports and dispatch.
Official Gemini API, Gemini web session, OpenAI/Claude-compatible and Grok,
behind a single ProviderDispatcher.
"""
from switchboard.providers.dispatcher import ProviderDispatcher
from switchboard.providers.accounts import AccountPool
from switchboard.providers.base import BaseProvider
from switchboard.providers.retry import RetryPolicy
from switchboard.providers.official import OfficialProvider
from switchboard.providers.web import GeminiWebProvider
from switchboard.providers.openai_compat import OpenAICompatibleProvider
from switchboard.providers.grok import GrokProvider
from switchboard.providers.ocr import MistralOCRClient

__all__ = [
    "ProviderDispatcher",
    "AccountPool",
    "BaseProvider",
    "RetryPolicy",
    "OfficialProvider",
    "GeminiWebProvider",
    "OpenAICompatibleProvider",
    "GrokProvider",
    "MistralOCRClient",
]
