"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mediaopt.api.routes import router
from mediaopt.config import CORS_ORIGINS, logger as config_logger
from mediaopt.conversion.capabilities import get_detector
from mediaopt.conversion.errors import WebhookError
from mediaopt.db import init_db

logging.getLogger("uvicorn").setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    get_detector().get_matrix()
    config_logger.info("Media optimization API started")
    yield
    config_logger.info("Media optimization API shutting down")


app = FastAPI(
    title="Media Optimization API",
    description="Convert images and videos to WebP/AVIF and AV1/WebM locally or through a remote processing service.",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if CORS_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(WebhookError)
async def webhook_error_handler(request: Request, exc: WebhookError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "code": exc.code, "message": str(exc)},
    )


app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    from mediaopt.config import HOST, PORT
    uvicorn.run("mediaopt.main:app", host=HOST, port=PORT, reload=True)
