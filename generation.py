import asyncio
from typing import Protocol, Sequence

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from errors import GenerationFailure
from prompts import BackendRole, Turn


class Generator(Protocol):
    model: str

    async def generate(self, history: Sequence[Turn], prompt_text: str) -> str:
        ...


def make_client(api_key: str, timeout_seconds: float) -> genai.Client:
    return genai.Client(
        api_key=api_key,
        http_options=types.HttpOptions(timeout=int(timeout_seconds * 1000)),
    )


class GeminiGenerator:
    """One attempt per call against the Gemini API. Failures are re-raised
    as GenerationFailure carrying the upstream message and code untouched."""

    def __init__(
        self,
        client: genai.Client,
        model: str,
        *,
        timeout_seconds: float = 60.0,
        system_instruction: str | None = None,
    ):
        self.client = client
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.system_instruction = system_instruction

    def _contents(self, history: Sequence[Turn], prompt_text: str) -> list[types.Content]:
        contents = [
            types.Content(role=t.role.value, parts=[types.Part(text=t.text)])
            for t in history
        ]
        contents.append(types.Content(role=BackendRole.USER.value, parts=[types.Part(text=prompt_text)]))
        return contents

    async def generate(self, history: Sequence[Turn], prompt_text: str) -> str:
        config = None
        if self.system_instruction:
            config = types.GenerateContentConfig(system_instruction=self.system_instruction)

        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    self.client.models.generate_content,
                    model=self.model,
                    contents=self._contents(history, prompt_text),
                    config=config,
                ),
                timeout=self.timeout_seconds,
            )
        except genai_errors.APIError as exc:
            raise GenerationFailure(str(exc), exc.code) from exc
        except asyncio.TimeoutError as exc:
            raise GenerationFailure(f"fetch failed: no response within {self.timeout_seconds:g}s") from exc
        except httpx.TransportError as exc:
            raise GenerationFailure(f"fetch failed: {exc!r}") from exc
        except Exception as exc:
            raise GenerationFailure(str(exc) or repr(exc), getattr(exc, "code", None)) from exc

        text = (response.text or "").strip()
        if not text:
            raise GenerationFailure("empty response from model")
        return text
