from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import Settings
from voicehire.api.routes import router as api_router
from voicehire.api.ws_interview import router as interview_ws_router
from voicehire.context import AppContext

logging.basicConfig(
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    level=logging.INFO,
)

logger = logging.getLogger("voicehire.main")


def create_app(context: AppContext | None = None, settings: Settings | None = None) -> FastAPI:
    settings = settings or (context.settings if context else Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.context = context or AppContext.from_settings(settings)
        logger.info("VoiceHire backend started | env=%s", settings.environment)
        try:
            yield
        finally:
            await app.state.context.aclose()

    app = FastAPI(title="VoiceHire Interview Backend", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allow_origins),
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=False,
    )
    app.include_router(api_router)
    app.include_router(interview_ws_router)
    return app


app = create_app()
