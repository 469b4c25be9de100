# offline_doctor/main.py
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from offline_doctor.api import chat, conversations, engine, models
from offline_doctor.core.config import AppSettings, get_settings
from offline_doctor.core.errors import AssistantError
from offline_doctor.services.app_state import AppState
from offline_doctor.services.chat_orchestrator import ChatOrchestrator

logger = logging.getLogger(__name__)


def create_app(settings: Optional[AppSettings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=settings.log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        state = await AppState.open(settings)
        app.state.app_state = state
        app.state.orchestrator = ChatOrchestrator(state)
        logger.info("Application initialized, data dir %s", settings.data_dir)
        try:
            yield
        finally:
            # llama-server must not outlive the app
            await state.close()

    app = FastAPI(title="Offline Doctor API", version="1.0.0", lifespan=lifespan)

    app.include_router(chat.router)
    app.include_router(conversations.router)
    app.include_router(engine.router)
    app.include_router(models.router)

    @app.exception_handler(AssistantError)
    async def assistant_error_handler(request: Request, exc: AssistantError):
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception: %s", exc)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.get("/")
    async def root():
        return {"message": "Offline Doctor API is running", "version": "1.0.0"}

    return app


app = create_app()


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    run()
