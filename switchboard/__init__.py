"""
Switchboard: one line in, four carriers out.

Dispatches chat requests to Gemini (API or web session), OpenAI/Claude-compatible
endpoints, or Grok, normalizes their streams into (text, thoughts) updates,
and keeps a bounded conversation history.
"""

__version__ = "0.3.0"
