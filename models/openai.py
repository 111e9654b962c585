"""OpenAI LLM provider.

Uses the OpenAI chat completions API to classify extracted document text.
"""

from typing import Dict, List, Optional

from openai import OpenAI, OpenAIError

from .base import LLM, LLMError


class OpenAILLM(LLM):
    """OpenAI implementation of document classification.

    Requests JSON-object output so the reply parses directly.
    """

    def __init__(self, model: str = "gpt-4.1", client: Optional[OpenAI] = None) -> None:
        """Initialize OpenAI client.

        Uses OPENAI_API_KEY environment variable automatically.
        """
        self.client = client or OpenAI()
        self._model = model

    @property
    def name(self) -> str:
        return "openai"

    @property
    def model(self) -> str:
        return self._model

    def complete(self, messages: List[Dict[str, str]]) -> str:
        try:
            response = self.client.chat.completions.create(
                model=self._model,
                messages=messages,
                response_format={"type": "json_object"},
            )
        except OpenAIError as e:
            raise LLMError(f"OpenAI API error: {e}")
        return response.choices[0].message.content or ""
