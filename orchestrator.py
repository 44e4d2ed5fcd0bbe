import asyncio
from dataclasses import dataclass
from typing import Iterable, Mapping

import structlog

from classifier import classify
from errors import AdmissionDenied, GenerationFailure, MalformedRequest, UpstreamError
from generation import Generator
from log import get_logger
from prompts import assemble
from ratelimit import RateLimiter
from store import PersistResult, SessionStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class ChatReply:
    text: str
    session_id: str | None


class ChatOrchestrator:
    """Admit -> assemble -> invoke -> persist (best effort) -> respond."""

    def __init__(
        self,
        limiter: RateLimiter,
        generator: Generator,
        store: SessionStore,
        *,
        inject_system_instruction: bool = True,
        expose_error_details: bool = False,
    ):
        self.limiter = limiter
        self.generator = generator
        self.store = store
        self.inject_system_instruction = inject_system_instruction
        self.expose_error_details = expose_error_details

    async def handle(
        self,
        message: str,
        history: Iterable[Mapping[str, str]],
        *,
        session_id: str | None,
        identity: str,
        owner_id: str,
    ) -> ChatReply:
        if not message or not message.strip():
            raise MalformedRequest("The 'message' field is required.")

        structlog.contextvars.bind_contextvars(identity=identity, owner_id=owner_id)

        # 1) admission
        admission = await self.limiter.admit(identity)
        if not admission.allowed:
            raise AdmissionDenied(identity)

        # 2) prompt
        prompt = assemble(history, message, inject_system_instruction=self.inject_system_instruction)
        logger.debug(
            "prompt_assembled",
            prior_turns=len(prompt.backend_history),
            system_instruction_injected=prompt.system_instruction_injected,
        )

        # 3) model call
        try:
            text = await self.generator.generate(prompt.backend_history, prompt.prompt_text)
        except GenerationFailure as exc:
            classified = classify(exc.message, exc.code)
            logger.error(
                "generation_failed",
                model=self.generator.model,
                kind=classified.kind.value,
                raw_code=exc.code,
                raw_message=exc.message,
            )
            raise UpstreamError(
                classified.user_message,
                status_code=classified.status_code,
                kind=classified.kind.value,
                details=exc.message if self.expose_error_details else None,
            ) from exc

        # 4) save turns; failures are logged and otherwise ignored
        saved_id = await self._persist(session_id, owner_id, message, text)
        return ChatReply(text=text, session_id=saved_id or session_id)

    async def _persist(self, session_id: str | None, owner_id: str, message: str, answer: str) -> str | None:
        result = await asyncio.to_thread(self.store.ensure_session, session_id, owner_id, message)
        if not self._log_if_failed(result, "ensure_session"):
            return None

        for role, content in (("user", message), ("assistant", answer)):
            turn = await asyncio.to_thread(self.store.append_turn, result.session_id, role, content)
            if not self._log_if_failed(turn, f"append_{role}_turn"):
                break
        return result.session_id

    @staticmethod
    def _log_if_failed(result: PersistResult, step: str) -> bool:
        if not result.ok:
            logger.error("persistence_failed", step=step, session_id=result.session_id, error=result.error)
        return result.ok
