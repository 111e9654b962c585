"""Mistral AI providers.

MistralLLM classifies extracted text with a chat model. MistralOCR extracts
text from PDFs and images with the Mistral OCR API.
"""

import base64
import mimetypes
import os
from typing import Dict, List, Optional

import structlog
from mistralai import Mistral

from .base import LLM, LLMError, Extraction, TextExtractor

log = structlog.get_logger(__name__)

OCR_MODEL = "mistral-ocr-latest"


def _create_client(client: Optional[Mistral]) -> Mistral:
    """Use the given client or build one from MISTRAL_API_KEY.

    Raises:
        KeyError: If MISTRAL_API_KEY environment variable is not set
    """
    if client is not None:
        return client
    return Mistral(api_key=os.environ["MISTRAL_API_KEY"])


class MistralLLM(LLM):
    """Mistral AI implementation of document classification."""

    def __init__(self, model: str = "mistral-small-latest",
                 client: Optional[Mistral] = None) -> None:
        self.client = _create_client(client)
        self._model = model

    @property
    def name(self) -> str:
        return "mistral"

    @property
    def model(self) -> str:
        return self._model

    def complete(self, messages: List[Dict[str, str]]) -> str:
        try:
            response = self.client.chat.complete(
                model=self._model,
                messages=messages,
                response_format={"type": "json_object"},
            )
        except Exception as e:
            raise LLMError(f"Mistral API error: {e}")
        return response.choices[0].message.content or ""


class MistralOCR(TextExtractor):
    """Text extraction through the Mistral OCR API.

    PDFs are uploaded with purpose="ocr" and passed by signed URL; the
    uploaded file is an artifact deleted by release(). Images are sent
    inline as data URLs.
    """

    def __init__(self, timeout_seconds: int = 600, client: Optional[Mistral] = None) -> None:
        self.client = _create_client(client)
        self.timeout_ms = int(timeout_seconds) * 1000

    @property
    def name(self) -> str:
        return "mistral-ocr"

    def extract(self, local_path: str, original_name: str, mime_class: str) -> Extraction:
        try:
            self._check_file_size(local_path)
        except ValueError as e:
            raise LLMError(str(e))

        artifacts: Dict[str, str] = {}
        if mime_class == "pdf":
            document = {"type": "document_url", "document_url": self._upload(local_path, original_name, artifacts)}
        else:
            mime = mimetypes.guess_type(original_name)[0] or "image/jpeg"
            with open(local_path, "rb") as f:
                encoded = base64.b64encode(f.read()).decode("utf-8")
            document = {"type": "image_url", "image_url": f"data:{mime};base64,{encoded}"}

        try:
            response = self.client.ocr.process(
                model=OCR_MODEL,
                document=document,
                include_image_base64=False,
                timeout_ms=self.timeout_ms,
            )
        except Exception as e:
            try:
                self.release(Extraction(text="", source=self.name, artifacts=artifacts))
            except LLMError as cleanup_error:
                log.warning("ocr artifact cleanup failed", error=str(cleanup_error))
            raise LLMError(f"Mistral OCR failed for {original_name}: {e}")

        text = "\n\n".join(page.markdown or "" for page in response.pages).strip()
        return Extraction(text=text, source=self.name, artifacts=artifacts)

    def _upload(self, local_path: str, original_name: str, artifacts: Dict[str, str]) -> str:
        """Upload a PDF and return a signed URL for it."""
        try:
            with open(local_path, "rb") as file:
                uploaded = self.client.files.upload(
                    file={"file_name": original_name or "document.pdf", "content": file},
                    purpose="ocr",
                )
            artifacts["mistral_file_id"] = uploaded.id
            signed_url = self.client.files.get_signed_url(file_id=uploaded.id)
        except Exception as e:
            raise LLMError(f"Failed to upload document to Mistral: {e}")
        return signed_url.url

    def release(self, extraction: Extraction) -> None:
        file_id = extraction.artifacts.pop("mistral_file_id", None)
        if not file_id:
            return
        try:
            self.client.files.delete(file_id=file_id)
        except Exception as e:
            raise LLMError(f"Failed to delete Mistral file {file_id}: {e}")
