"""
Provider-agnostic completion client for Parley.

Supports Anthropic, OpenAI, and Google Gemini with a shared multi-turn
interface: (system frame, conversation history, optional grounding tools)
-> reply text.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .errors import CompletionError

logger = logging.getLogger("parley.common.llm_client")

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

USER = "user"
ASSISTANT = "assistant"


@dataclass
class ConversationTurn:
    """One message handed to the model; role is "user" or "assistant"."""
    role: str
    text: str


def merge_consecutive_turns(history: List[ConversationTurn]) -> List[ConversationTurn]:
    """Collapse runs of same-role turns so roles strictly alternate."""
    merged: List[ConversationTurn] = []
    for turn in history:
        if merged and merged[-1].role == turn.role:
            merged[-1] = ConversationTurn(turn.role, f"{merged[-1].text}\n\n{turn.text}")
        else:
            merged.append(ConversationTurn(turn.role, turn.text))
    return merged


class LLMClient:
    """Unified completion client across LLM providers."""

    def __init__(
        self,
        provider: str = "google",
        model: str = "",
        anthropic_api_key: Optional[str] = None,
        openai_api_key: Optional[str] = None,
        google_api_key: Optional[str] = None,
        max_tokens: int = 1024,
        timeout: float = 60.0,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.provider = (provider or "google").lower()
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._client = None
        self._google_api_key: Optional[str] = None
        self._http = http_client
        self._owns_http = http_client is None

        if self.provider == "anthropic":
            if not anthropic_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import anthropic

                self._client = anthropic.Anthropic(api_key=anthropic_api_key)
            except ImportError:
                logger.warning("anthropic package not installed")
            except Exception as e:
                logger.warning("Failed to initialize Anthropic client: %s", e)
            return

        if self.provider == "openai":
            if not openai_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                from openai import OpenAI

                self._client = OpenAI(api_key=openai_api_key)
            except ImportError:
                logger.warning("openai package not installed")
            except Exception as e:
                logger.warning("Failed to initialize OpenAI client: %s", e)
            return

        if self.provider == "google":
            if not google_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            self._google_api_key = google_api_key
            if self._http is None:
                self._http = httpx.Client(timeout=httpx.Timeout(timeout))
            try:
                import google.generativeai as genai

                genai.configure(api_key=google_api_key)
                self._client = genai  # Store the module, models are built per system frame
            except ImportError:
                logger.warning("google-generativeai package not installed")
            except Exception as e:
                logger.warning("Failed to initialize Gemini client: %s", e)
            return

        logger.warning("Unsupported LLM provider: %s", self.provider)

    @property
    def is_available(self) -> bool:
        return self._client is not None

    def complete(
        self,
        system: str,
        history: List[ConversationTurn],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        """
        Generate the next assistant reply.

        Args:
            system: System frame (persona, instructions, inactivity note)
            history: Chronological turns, the current user turn last
            tools: Provider grounding tools (Gemini file search); other
                providers ignore them

        Returns:
            Reply text, stripped

        Raises:
            CompletionError: provider call failed or produced no text
        """
        if not self.is_available:
            raise RuntimeError("LLM client is not available")

        if not history:
            raise ValueError("Cannot complete an empty conversation")

        if tools and self.provider != "google":
            logger.debug("Grounding tools are not supported by %s, ignoring", self.provider)

        turns = merge_consecutive_turns(history)

        try:
            if self.provider == "anthropic":
                text = self._complete_anthropic(system, turns)
            elif self.provider == "openai":
                text = self._complete_openai(system, turns)
            else:
                text = self._complete_google(system, turns, tools)
        except CompletionError:
            raise
        except Exception as e:
            raise CompletionError(f"{self.provider} completion failed: {e}") from e

        text = (text or "").strip()
        if not text:
            raise CompletionError(f"{self.provider} returned an empty completion")
        return text

    def _complete_anthropic(self, system: str, turns: List[ConversationTurn]) -> str:
        # Messages API requires the first message to come from the user
        while turns and turns[0].role != USER:
            turns = turns[1:]
        if not turns:
            raise CompletionError("No user turn to answer")

        response = self._client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=system,
            messages=[{"role": t.role, "content": t.text} for t in turns],
            timeout=self.timeout,
        )
        if not response.content:
            return ""
        return response.content[0].text

    def _complete_openai(self, system: str, turns: List[ConversationTurn]) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.extend({"role": t.role, "content": t.text} for t in turns)
        response = self._client.chat.completions.create(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=messages,
            timeout=self.timeout,
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    def _complete_google(
        self,
        system: str,
        turns: List[ConversationTurn],
        tools: Optional[List[Dict[str, Any]]],
    ) -> str:
        if tools:
            # google-generativeai reads every tool as a function declaration
            # and has no file_search field, so grounded calls go over REST
            return self._complete_google_rest(system, turns, tools)

        kwargs = {"model_name": self.model}
        if system:
            kwargs["system_instruction"] = system
        model = self._client.GenerativeModel(**kwargs)

        contents = [
            {"role": "model" if t.role == ASSISTANT else "user", "parts": [t.text]}
            for t in turns
        ]
        response = model.generate_content(
            contents,
            generation_config={"max_output_tokens": self.max_tokens},
            request_options={"timeout": self.timeout},
        )
        if not response.candidates:
            return ""
        try:
            return response.text
        except ValueError:
            # Raised when the candidate holds no text part (blocked/empty)
            return ""

    def _complete_google_rest(
        self,
        system: str,
        turns: List[ConversationTurn],
        tools: List[Dict[str, Any]],
    ) -> str:
        """generateContent over httpx, for requests that carry grounding tools"""
        body: Dict[str, Any] = {
            "contents": [
                {"role": "model" if t.role == ASSISTANT else "user", "parts": [{"text": t.text}]}
                for t in turns
            ],
            "tools": [camel_case_keys(tool) for tool in tools],
            "generationConfig": {"maxOutputTokens": self.max_tokens},
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}

        model_path = self.model if self.model.startswith("models/") else f"models/{self.model}"
        response = self._http.post(
            f"{GEMINI_API_BASE}/{model_path}:generateContent",
            json=body,
            headers={"x-goog-api-key": self._google_api_key or ""},
        )
        if response.is_error:
            raise CompletionError(
                f"google completion failed: {response.status_code}: {response.text[:500]}"
            )

        candidates = response.json().get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))

    def close(self) -> None:
        if self._http is not None and self._owns_http:
            self._http.close()


def camel_case_keys(value: Any) -> Any:
    """Rename snake_case dict keys to the camelCase the REST API uses"""
    if isinstance(value, dict):
        renamed = {}
        for key, item in value.items():
            head, *rest = key.split("_")
            renamed[head + "".join(word.capitalize() for word in rest)] = camel_case_keys(item)
        return renamed
    if isinstance(value, list):
        return [camel_case_keys(item) for item in value]
    return value
