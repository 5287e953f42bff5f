import logging
import uuid

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status

from meez_recipes.app.api.deps import build_pipeline
from meez_recipes.app.api.routes import api_router
from meez_recipes.app.core.config import Settings, get_settings
from meez_recipes.app.db import models  # noqa: F401
from meez_recipes.app.db.base import Base
from meez_recipes.app.db.session import build_engine, build_session_factory

logger = logging.getLogger(__name__)


async def validation_exception_handler(request, exc: RequestValidationError):
    request_id = uuid.uuid4().hex[:12]
    details = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", []) if part is not None)
        msg = err.get("msg", "Invalid value")
        details.append({"field": loc or None, "message": msg})
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "INVALID_INPUT",
            "message": "Invalid request payload.",
            "details": details,
            "request_id": request_id,
        },
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    app = FastAPI(title="Meez Recipes", version="0.1.0")
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.include_router(api_router)

    engine = build_engine(settings.database_url)
    app.state.engine = engine
    app.state.pipeline = build_pipeline(settings, build_session_factory(engine))

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.on_event("startup")
    async def startup_event() -> None:
        Base.metadata.create_all(bind=engine)
        logger.info("Recipe cache tables ready")

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        await app.state.pipeline.cache_store.drain()

    return app


app = create_app()
