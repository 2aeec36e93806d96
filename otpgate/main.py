from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from .config import CORS_ALLOW_HEADERS, CORS_ALLOW_METHODS, get_settings
from .api.routers import health as health_router
from .api.routers import auth as auth_router
from .api.routers import metrics as metrics_router
from .observability.logging import setup_logging
from .middleware.request_context import RequestContextMiddleware
from .observability.metrics import MetricsHTTPMiddleware
import uvicorn

settings = get_settings()
setup_logging()


async def _http_error(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    # every error body is {"error": "..."}
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def _validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse({"error": "Missing required fields"}, status_code=400)


def create_app() -> FastAPI:
    app = FastAPI(title=settings.APP_NAME, debug=settings.DEBUG)

    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _validation_error)

    # last added runs first: metrics -> CORS -> request context
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_methods=CORS_ALLOW_METHODS,
        allow_headers=CORS_ALLOW_HEADERS,
    )
    app.add_middleware(MetricsHTTPMiddleware)

    app.include_router(health_router.router)
    app.include_router(auth_router.router)
    app.include_router(metrics_router.router)

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("otpgate.main:app", host=settings.APP_HOST, port=settings.APP_PORT, reload=settings.DEBUG)
