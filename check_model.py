"""Probe the configured Gemini model, then a few fallbacks, with a one-word prompt.

    python check_model.py [model ...]
"""
import asyncio
import sys

from classifier import classify
from config import Settings
from errors import GenerationFailure
from generation import GeminiGenerator, make_client

FALLBACK_MODELS = ("gemini-flash-latest", "gemini-2.5-flash", "gemini-2.0-flash")
PROBE_PROMPT = "Hi"


async def probe(client, model: str, timeout_seconds: float) -> bool:
    generator = GeminiGenerator(client, model, timeout_seconds=timeout_seconds)
    try:
        text = await generator.generate((), PROBE_PROMPT)
    except GenerationFailure as exc:
        classified = classify(exc.message, exc.code)
        print(f"❌ {model}: {classified.kind.value} ({exc.message})")
        return False
    print(f"✅ {model}: {text[:60]!r}")
    return True


async def main(argv: list[str]) -> int:
    settings = Settings.from_env()
    api_key = settings.require_api_key()
    print(f"🔑 Using key starting with {api_key[:5]}...")

    client = make_client(api_key, settings.generation_timeout_seconds)
    candidates = argv or [settings.gemini_model, *FALLBACK_MODELS]
    seen = []
    for model in candidates:
        if model in seen:
            continue
        seen.append(model)
        if await probe(client, model, settings.generation_timeout_seconds):
            if model != settings.gemini_model:
                print(f"⚠️  Set GEMINI_MODEL={model} to use a model that answers.")
            return 0

    print("🔴 No model answered: check the API key and that the Generative Language API is enabled.")
    return 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main(sys.argv[1:])))
