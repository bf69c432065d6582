from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from educrm.api.v1.payments.router import router as payments_router
from educrm.api.v1.students.router import router as students_router
from educrm.api.v1.auth.router import router as auth_router
from educrm.core.config import settings
from educrm.core.logging import setup_logging


def create_app() -> FastAPI:
    setup_logging(settings.log_level, settings.log_format)

    app = FastAPI(title="EduCRM Backend")

    # CORS: allow the admin frontend to call this API
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(auth_router)
    app.include_router(students_router)
    app.include_router(payments_router)

    return app


app = create_app()
