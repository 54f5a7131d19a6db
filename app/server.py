import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator

from app.relay.route import sweepers
from app.vars import (
    CORS_ALLOW_ORIGINS,
    OTLP_ENDPOINT,
    OTLP_HEADERS,
    SERVICE_NAME,
    SERVICE_VERSION,
)

from .routes import router

logger = logging.getLogger("uvicorn.error")


@asynccontextmanager
async def lifespan(app: FastAPI):
    for sweeper in sweepers:
        sweeper.start()
    logger.info(f"[Server] {SERVICE_NAME} {SERVICE_VERSION} started")
    try:
        yield
    finally:
        for sweeper in sweepers:
            await sweeper.stop()
        logger.info(f"[Server] {SERVICE_NAME} stopped")


app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Proxy-Final-Url", "X-Proxy-Cache", "X-Proxy-Error"],
)

instrumentator = Instrumentator()

instrumentator.instrument(app).expose(app)

trace.set_tracer_provider(
    TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
)
tracer_provider = trace.get_tracer_provider()
if OTLP_ENDPOINT:
    otlp_exporter = OTLPSpanExporter(
        endpoint=OTLP_ENDPOINT,
        headers=(dict(h.split("=", 1) for h in OTLP_HEADERS.split(",") if "=" in h) or None),
    )
    tracer_provider.add_span_processor(BatchSpanProcessor(otlp_exporter))

# Instrument FastAPI
FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")

# Add app_name to the metrics
app_info = Info("fastapi_app_info", "Application Info")
app_info.info({"app_name": SERVICE_NAME, "version": SERVICE_VERSION})

app.include_router(router)
