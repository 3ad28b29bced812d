from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .api.routes_issues import router as issues_router
from .api.routes_notifications import router as notifications_router
from .api.routes_settings import router as settings_router
from .api.routes_status import router as status_router
from .config import Settings, settings
from .core.database import SessionLocal, engine, init_db
from .core.logging_config import configure_logging
from .core.seed import seed_initial_data
from .core.tracker import ErrorTracker
from .server.middleware import ErrorCaptureMiddleware


def create_app(
    app_settings: Settings = settings,
    *,
    bind: Engine = engine,
    session_factory: sessionmaker = SessionLocal,
    tracker: Optional[ErrorTracker] = None,
    process_hooks: bool = True,
    retry_loop: bool = True,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(app_settings.log_level)

        # Create tables
        init_db(bind)

        # Seed if empty
        with session_factory() as db:
            seed_initial_data(db, app_settings)

        app.state.tracker = tracker or ErrorTracker.from_settings(app_settings, session_factory)
        await app.state.tracker.init(process_hooks=process_hooks, retry_loop=retry_loop)
        try:
            yield
        finally:
            await app.state.tracker.shutdown()

    app = FastAPI(
        title="issuetrack",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(ErrorCaptureMiddleware)

    app.include_router(status_router)
    app.include_router(issues_router)
    app.include_router(notifications_router)
    app.include_router(settings_router)
    return app


app = create_app()
