"""
Language model client.

OpenAI-compatible chat/completion calls made through the runtime's fetch,
with incremental decoding of streamed responses.
"""

from .client import LLMClient, ReadinessState
from .frame_decoder import FrameDecoder, iter_frames

__all__ = ["LLMClient", "ReadinessState", "FrameDecoder", "iter_frames"]
