# Request-scoped access to the application state
from fastapi import Request

from offline_doctor.services.chat_orchestrator import ChatOrchestrator


def get_orchestrator(request: Request) -> ChatOrchestrator:
    return request.app.state.orchestrator
