"""
Transcript parser - turns a raw interview transcript into the four answers.

Two backends:
- EndpointTranscriptParser: POSTs {"transcript": ...} to a custom LLM endpoint
  (LLM_API_ENDPOINT / LLM_API_KEY) and expects the four fields back
- OpenAITranscriptParser: chat completion with a JSON response format

Both make exactly one attempt per call with a bounded timeout. Retrying is
the caller's choice (the reparse endpoint).
"""

import abc
import json
import logging
import time
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

import httpx
from openai import OpenAI

from intake_api.core.config import settings

logger = logging.getLogger(__name__)


class TranscriptParseError(Exception):
    """Empty transcript, backend failure, or a response with nothing usable."""


@dataclass(frozen=True)
class ParsedIntake:
    """The four interview answers. Any may be None, but never all four."""
    communication_style: Optional[str] = None
    professional_goals: Optional[str] = None
    values: Optional[str] = None
    partnership_expectations: Optional[str] = None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return asdict(self)


SYSTEM_PROMPT = """You are reading the transcript of a short onboarding interview.
The interviewer asked the contact about four topics. Summarize what the contact said about each one.

Return JSON with exactly these keys:
{
    "communication_style": "how they prefer to communicate, or null",
    "professional_goals": "their professional goals, or null",
    "values": "what they value in work and partnerships, or null",
    "partnership_expectations": "what they expect from a partnership, or null"
}

Use null for any topic the contact did not talk about. Do not invent answers."""


def _clean(value: Any) -> Optional[str]:
    """Coerce one model output field to text or None."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        value = "; ".join(str(v).strip() for v in value if v is not None and str(v).strip())
    elif isinstance(value, dict):
        value = json.dumps(value, sort_keys=True) if value else ""
    text = str(value).strip()
    if not text or text.lower() in ("null", "none", "n/a"):
        return None
    return text


def to_parsed_intake(data: Any) -> ParsedIntake:
    """
    Validate backend output.

    Raises:
        TranscriptParseError: not an object, or all four fields empty
    """
    if not isinstance(data, dict):
        raise TranscriptParseError(f"Parser returned {type(data).__name__}, expected an object")

    parsed = ParsedIntake(
        communication_style=_clean(data.get("communication_style")),
        professional_goals=_clean(data.get("professional_goals")),
        values=_clean(data.get("values")),
        partnership_expectations=_clean(data.get("partnership_expectations")),
    )
    if not any(parsed.as_dict().values()):
        raise TranscriptParseError("Parser response missing required fields")
    return parsed


class TranscriptParser(abc.ABC):
    """Base class: validation and logging around a backend call."""

    name = "parser"

    def parse(self, transcript: Optional[str]) -> ParsedIntake:
        """
        Extract the four answers from a transcript.

        Args:
            transcript: Raw transcript text

        Returns:
            ParsedIntake with at least one field set

        Raises:
            TranscriptParseError: on any failure
        """
        if not transcript or not transcript.strip():
            raise TranscriptParseError("Empty transcript provided")

        start_time = time.time()
        logger.info(f"Parsing transcript with {self.name} ({len(transcript)} chars)")
        try:
            data = self._extract(transcript)
        except TranscriptParseError:
            raise
        except Exception as e:
            logger.error(f"Transcript parser {self.name} failed: {e}")
            raise TranscriptParseError(str(e)) from e

        parsed = to_parsed_intake(data)
        filled = sum(1 for v in parsed.as_dict().values() if v)
        logger.info(f"Transcript parsed in {time.time() - start_time:.2f}s, {filled}/4 fields filled")
        return parsed

    @abc.abstractmethod
    def _extract(self, transcript: str) -> Any:
        """Call the backend once and return its decoded JSON."""


class EndpointTranscriptParser(TranscriptParser):
    """Custom LLM endpoint taking {"transcript": ...} with a bearer key."""

    name = "llm-endpoint"

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout
        self.client = client

    def _extract(self, transcript: str) -> Any:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        if self.client is not None:
            response = self.client.post(self.endpoint, json={"transcript": transcript}, headers=headers, timeout=self.timeout)
        else:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.endpoint, json={"transcript": transcript}, headers=headers)
        response.raise_for_status()
        return response.json()


class OpenAITranscriptParser(TranscriptParser):
    """OpenAI chat completion constrained to a JSON object."""

    name = "openai"

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", timeout: float = 30.0, client: Optional[OpenAI] = None):
        self.model = model
        # No SDK-level retries; one attempt per parse
        self.client = client or OpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    def _extract(self, transcript: str) -> Any:
        request_params = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": f"Transcript:\n\n{transcript}"},
            ],
            "response_format": {"type": "json_object"},
        }
        # Only add temperature for models that support it (not GPT-5)
        if not self.model.startswith("gpt-5"):
            request_params["temperature"] = 0.1

        response = self.client.chat.completions.create(**request_params)
        usage = getattr(response, "usage", None)
        if usage:
            logger.info(f"OpenAI tokens - prompt: {usage.prompt_tokens}, completion: {usage.completion_tokens}")
        return json.loads(response.choices[0].message.content)


class UnconfiguredTranscriptParser(TranscriptParser):
    """Used when no backend is configured; every parse fails cleanly."""

    name = "unconfigured"

    def _extract(self, transcript: str) -> Any:
        raise TranscriptParseError("No transcript parser configured (set LLM_API_ENDPOINT or OPENAI_API_KEY)")


def build_transcript_parser() -> TranscriptParser:
    """Pick the backend from settings. The custom endpoint wins when both are set."""
    if settings.llm_api_endpoint:
        return EndpointTranscriptParser(
            settings.llm_api_endpoint,
            api_key=settings.llm_api_key,
            timeout=settings.parser_timeout_seconds,
        )
    if settings.openai_api_key:
        return OpenAITranscriptParser(
            settings.openai_api_key,
            model=settings.openai_model,
            timeout=settings.parser_timeout_seconds,
        )
    logger.warning("No transcript parser configured - transcript parsing disabled")
    return UnconfiguredTranscriptParser()
