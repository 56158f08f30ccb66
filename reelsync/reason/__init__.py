"""
Reasoning layer: transcription backends, transcript interpreters and the
extraction fallback chain.
"""

from .extraction import ExtractionChain, TranscribeInterpretStrategy, build_default_chain

__all__ = ["ExtractionChain", "TranscribeInterpretStrategy", "build_default_chain"]
