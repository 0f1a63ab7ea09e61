import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from flagpub.config import settings
from flagpub.errors import FlagPublishError
from flagpub.logging_config import generate_request_id, request_id_ctx, setup_logging
from flagpub.metrics import setup_metrics
from flagpub.routers.apps import router as apps_router
from flagpub.routers.config import router as config_router
from flagpub.routers.health import router as health_router
from flagpub.routers.keys import router as keys_router

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Flag Publisher", version="0.2.0")

# CORS (adjust as needed)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or generate_request_id()
    token = request_id_ctx.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx.reset(token)
    response.headers["X-Request-ID"] = request_id
    return response

@app.exception_handler(FlagPublishError)
async def flag_publish_error_handler(request: Request, exc: FlagPublishError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

# Routers
app.include_router(health_router, prefix="")
app.include_router(apps_router, prefix="")
app.include_router(config_router, prefix="")
app.include_router(keys_router, prefix="")

# Metrics endpoint
setup_metrics(app)

logger.info("flag publisher starting in %s", settings.APP_ENV)
