from fastapi import FastAPI, Request
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response
import time

REQUESTS = Counter("api_requests_total", "Total API requests", ["method", "endpoint", "http_status"])
LATENCY = Histogram("api_request_latency_seconds", "Request latency", ["method", "endpoint"])
PUBLISHES = Counter("config_publishes_total", "Config publish attempts", ["result", "stage"])
PUBLISH_LATENCY = Histogram("config_publish_latency_seconds", "End-to-end publish latency")
ARTIFACT_BYTES = Histogram(
    "config_artifact_bytes", "Signed artifact size",
    buckets=(1_000, 10_000, 50_000, 100_000, 500_000, 1_000_000, 5_000_000),
)
STORAGE_RETRIES = Counter("storage_retries_total", "Retried object storage calls", ["operation"])
KEY_ROTATIONS = Counter("signing_key_rotations_total", "Signing key activations")


def setup_metrics(app: FastAPI):

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        start = time.time()
        response = await call_next(request)
        elapsed = time.time() - start
        # route template, not the raw path, to keep label cardinality bounded
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)
        LATENCY.labels(request.method, endpoint).observe(elapsed)
        REQUESTS.labels(request.method, endpoint, response.status_code).inc()
        return response

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return Response(content=data, media_type=CONTENT_TYPE_LATEST)
