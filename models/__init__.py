"""Model provider abstraction for drivesorter.

Provides uniform interfaces across providers:
- LLM: OpenAILLM (default), MistralLLM
- TextExtractor: MistralOCR, FilenameOnlyExtractor

Usage:
    from models import create_llm, create_extractor

    llm = create_llm("openai", model="gpt-4.1")
    ocr = create_extractor("mistral", timeout_seconds=600)
    extraction = ocr.extract(local_path, "scan.pdf", "pdf")
    proposal = llm.classify(extraction.text, "scan.pdf", inventory, prompt)
"""

from .base import (
    LLM, LLMError, BadClassificationError, ClassificationProposal,
    Extraction, TextExtractor, FilenameOnlyExtractor,
    build_prompt, load_base_prompt, parse_json_response,
)
from .mistral import MistralLLM, MistralOCR
from .openai import OpenAILLM


def create_llm(provider: str = "openai", model: str = "") -> LLM:
    """Create an LLM instance for the specified provider.

    Args:
        provider: LLM provider name ("openai" or "mistral")
        model: Model name; empty uses the provider default

    Raises:
        ValueError: If provider is not recognized
    """
    provider = provider.lower()

    if provider == "openai":
        return OpenAILLM(model=model or "gpt-4.1")
    elif provider == "mistral":
        return MistralLLM(model=model or "mistral-small-latest")
    else:
        raise ValueError(
            f"Unknown LLM provider: {provider}. "
            "Must be 'openai' or 'mistral'"
        )


def create_extractor(provider: str = "mistral", timeout_seconds: int = 600) -> TextExtractor:
    """Create a text extractor ("mistral" or "none").

    Raises:
        ValueError: If provider is not recognized
    """
    provider = provider.lower()

    if provider == "mistral":
        return MistralOCR(timeout_seconds=timeout_seconds)
    elif provider == "none":
        return FilenameOnlyExtractor()
    else:
        raise ValueError(
            f"Unknown OCR provider: {provider}. "
            "Must be 'mistral' or 'none'"
        )


__all__ = [
    'LLM',
    'LLMError',
    'BadClassificationError',
    'ClassificationProposal',
    'Extraction',
    'TextExtractor',
    'FilenameOnlyExtractor',
    'MistralLLM',
    'MistralOCR',
    'OpenAILLM',
    'build_prompt',
    'load_base_prompt',
    'parse_json_response',
    'create_llm',
    'create_extractor',
]
