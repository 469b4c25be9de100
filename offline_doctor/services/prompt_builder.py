# offline_doctor/services/prompt_builder.py
from typing import Sequence

from offline_doctor.core.schemas import ROLE_ASSISTANT, ROLE_USER, Message

HISTORY_WINDOW = 10

SYSTEM_PREAMBLE = (
    "You are an AI medical assistant designed to help healthcare professionals, "
    "particularly resident doctors in remote locations. You provide information about "
    "medical conditions, symptoms, differential diagnoses, and treatment options. "
    "Always remind users that your responses are for educational purposes and should "
    "not replace clinical judgment or proper medical evaluation.\n\n"
)

_ROLE_MARKERS = {
    ROLE_USER: "Human",
    ROLE_ASSISTANT: "Assistant",
}


def build_prompt(user_message: str, history: Sequence[Message]) -> str:
    """Raw-completion prompt: preamble, last HISTORY_WINDOW messages, then the generation cue.

    Windowing counts messages, not tokens.
    """
    parts = [SYSTEM_PREAMBLE]
    for message in list(history)[-HISTORY_WINDOW:]:
        marker = _ROLE_MARKERS.get(message.role)
        if marker is None:
            continue
        parts.append(f"{marker}: {message.content}\n")
    parts.append(f"Human: {user_message}\nAssistant: ")
    return "".join(parts)
