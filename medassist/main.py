from contextlib import asynccontextmanager

from fastapi import FastAPI

from medassist.api.chat import router as chat_router
from medassist.api.documents import router as documents_router
from medassist.container import Services, build_services
from medassist.core.config import get_settings
from medassist.core.logging import setup_logging


def create_app(services: Services | None = None) -> FastAPI:
    """Build the app. Pass prebuilt services to skip wiring from the environment."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is None:
            # Fail fast if required env vars are missing.
            settings = get_settings()
            setup_logging(level=settings.log_level)
            app.state.services = build_services(settings)
        else:
            app.state.services = services
        await app.state.services.start()
        yield
        await app.state.services.close()

    app = FastAPI(title="MedAssist RAG Service", lifespan=lifespan)
    app.include_router(documents_router)
    app.include_router(chat_router)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    return app


app = create_app()
