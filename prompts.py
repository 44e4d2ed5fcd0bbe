from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping

DANGER_MARKER = "[DANGER ALERT]"

SYSTEM_INSTRUCTION = (
    'You are "Virtual DBA", a senior database consultant.\n'
    "GUIDELINES:\n"
    "1. Help with queries and performance tuning (Oracle, SQL Server, PostgreSQL, MySQL, MongoDB, etc).\n"
    f"2. {DANGER_MARKER}: If the user asks for DELETE, DROP or TRUNCATE statements, "
    "start your answer with this tag and warn about the risk of data loss.\n"
)


class BackendRole(str, Enum):
    USER = "user"
    MODEL = "model"

    @classmethod
    def from_caller(cls, role: str | None) -> "BackendRole":
        # only the literal "user" is user-submitted; anything else came from the model
        return cls.USER if role == "user" else cls.MODEL


@dataclass(frozen=True)
class Turn:
    role: BackendRole
    text: str


@dataclass(frozen=True)
class AssembledPrompt:
    backend_history: tuple[Turn, ...]
    prompt_text: str
    system_instruction_injected: bool


def assemble(
    prior_turns: Iterable[Mapping[str, str]],
    new_message: str,
    *,
    inject_system_instruction: bool = True,
) -> AssembledPrompt:
    history = tuple(
        Turn(BackendRole.from_caller(t.get("role")), t.get("content") or "")
        for t in prior_turns
    )
    if history or not inject_system_instruction:
        return AssembledPrompt(history, new_message, system_instruction_injected=False)

    # first turn: the backend may have no system channel, so the instruction rides in the prompt
    prompt = f"{SYSTEM_INSTRUCTION}\n---\n\n{new_message}"
    return AssembledPrompt(history, prompt, system_instruction_injected=True)
