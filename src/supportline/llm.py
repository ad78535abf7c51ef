"""
OpenAI chat / audio client wrapper.

Provides:
- Startup model validation
- Plain-text and JSON-object completions for labelling and adjudication
- Whisper transcription of in-memory WAV audio
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
import structlog
from openai import AsyncOpenAI

from src.supportline.config import get_config

logger = structlog.get_logger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"


@dataclass
class LLMResponse:
    """Response from LLM."""
    text: str
    total_ms: float = 0.0


async def validate_openai_model(api_key: str, model_name: str) -> bool:
    """
    Validate that the configured chat model exists.

    Calls GET https://api.openai.com/v1/models to check.

    Raises:
        SystemExit: If model doesn't exist (fail fast)
    """
    logger.info("Validating OpenAI model", model=model_name)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{OPENAI_BASE_URL}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to OpenAI API", error=str(e))
            raise SystemExit(
                f"Failed to connect to OpenAI API: {e}\n"
                "Check your network connection and OPENAI_API_KEY."
            )

    if response.status_code != 200:
        logger.error(
            "Failed to fetch OpenAI models",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise SystemExit(
            f"Failed to validate OpenAI model. API returned status {response.status_code}. "
            "Check your OPENAI_API_KEY."
        )

    model_ids = [m.get("id") for m in response.json().get("data", [])]
    if model_name not in model_ids:
        available = ", ".join(sorted(str(m) for m in model_ids)[:10])
        logger.error("OpenAI model not found", requested_model=model_name, available_models=available)
        raise SystemExit(
            f"OPENAI_CHAT_MODEL '{model_name}' not found in available models.\n"
            f"Available models include: {available}\n"
            "Please update OPENAI_CHAT_MODEL in your .env file."
        )

    logger.info("OpenAI model validated successfully", model=model_name)
    return True


class ChatLLM:
    """
    Thin async wrapper over the OpenAI chat and audio APIs.

    Errors from the API propagate; callers decide on their own fallbacks.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.openai_chat_model
        self.transcription_model = config.openai_transcription_model
        self._client = client or AsyncOpenAI(api_key=config.openai_api_key)

    @property
    def client(self) -> AsyncOpenAI:
        return self._client

    async def validate_model(self) -> bool:
        """Validate the configured model exists."""
        return await validate_openai_model(self.config.openai_api_key, self.model)

    async def complete_text(
        self,
        system_prompt: str,
        user_message: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 256,
    ) -> LLMResponse:
        start_time = time.time()
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=self._messages(system_prompt, user_message),
            temperature=temperature,
            max_tokens=max_tokens,
        )
        text = (response.choices[0].message.content or "").strip()
        return LLMResponse(text=text, total_ms=(time.time() - start_time) * 1000)

    async def complete_json(
        self,
        system_prompt: str,
        user_message: str,
        *,
        temperature: float = 0.1,
    ) -> Dict[str, Any]:
        """
        Request a JSON object completion.

        Raises:
            ValueError: If the model output is not a JSON object
        """
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=self._messages(system_prompt, user_message),
            response_format={"type": "json_object"},
            temperature=temperature,
        )
        content = response.choices[0].message.content or ""
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON from model: {e}")
        if not isinstance(data, dict):
            raise ValueError("Model output is not a JSON object")
        return data

    async def transcribe_wav(self, wav_bytes: bytes, *, prompt: Optional[str] = None) -> str:
        """Transcribe an in-memory WAV file with Whisper."""
        kwargs: Dict[str, Any] = {
            "file": ("audio.wav", wav_bytes, "audio/wav"),
            "model": self.transcription_model,
            "language": "en",
            "response_format": "json",
            "temperature": 0.0,
        }
        if prompt:
            kwargs["prompt"] = prompt
        result = await self._client.audio.transcriptions.create(**kwargs)
        return (getattr(result, "text", "") or "").strip()

    @staticmethod
    def _messages(system_prompt: str, user_message: str) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ]


# Singleton instance
_llm_instance: Optional[ChatLLM] = None


def get_llm() -> ChatLLM:
    """Get or create the LLM singleton."""
    global _llm_instance

    if _llm_instance is None:
        _llm_instance = ChatLLM()

    return _llm_instance


async def initialize_llm() -> ChatLLM:
    """
    Initialize and validate the LLM at startup.

    Returns:
        Initialized and validated ChatLLM instance
    """
    llm = get_llm()
    await llm.validate_model()
    return llm
