from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from dishka import AsyncContainer
from dishka.integrations.fastapi import setup_dishka

from core.container import make_container
from core.environment.config import Settings
from core.exception_handler import (
    validation_exception_handler,
    http_exception_handler,
    starlette_exception_handler,
    custom_exception_handler
)
from core.exceptions import BaseCustomException
from wallet.router import router as wallet_router

TITLE = "Wallet API Service"
VERSION = "1.0.0"
DESCRIPTION = "Smart account wallets with stablecoin balances and peer-to-peer transfers"


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await app.state.dishka_container.close()


def create_app(settings: Settings | None = None, container: AsyncContainer | None = None) -> FastAPI:
    """
    Build the FastAPI application.

    Parameters
    ----------
    settings : Settings | None
        Settings; read from the environment when omitted
    container : AsyncContainer | None
        Prepared container, built from ``settings`` when omitted

    Returns
    -------
    FastAPI
        Configured application
    """
    settings = settings or Settings()

    app = FastAPI(
        title=TITLE,
        version=VERSION,
        description=DESCRIPTION,
        lifespan=lifespan,
    )

    setup_dishka(container or make_container(settings), app)

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, starlette_exception_handler)
    app.add_exception_handler(BaseCustomException, custom_exception_handler)
    app.add_exception_handler(Exception, custom_exception_handler)

    app.include_router(wallet_router, prefix=settings.api_prefix)

    @app.get("/")
    async def root():
        """
        Root endpoint.

        Returns
        -------
        dict
            Application information
        """
        return {
            "name": TITLE,
            "version": VERSION,
            "description": DESCRIPTION,
            "endpoints": {
                "wallet": f"{settings.api_prefix}/",
                "transfer": f"{settings.api_prefix}/transfer",
                "payment_requests": f"{settings.api_prefix}/requests",
                "docs": "/docs"
            }
        }

    @app.get("/health")
    async def health():
        """
        Health check endpoint.

        Returns
        -------
        dict
            Health status
        """
        return {"status": "healthy", "version": VERSION}

    return app


app = create_app()
