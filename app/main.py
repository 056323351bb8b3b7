"""
Main FastAPI application entry point.
Initializes the application with middleware, routes, tracing, and the
long-lived chat delivery components (connection registry, gateway client,
delivery queue, gateway health monitor).
"""
import logging
from uuid import uuid4
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from core.config import settings
from db.database import SessionLocal, engine, init_db

# OpenTelemetry imports
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

# Prometheus metrics
from prometheus_fastapi_instrumentator import Instrumentator

from core.logging_config import configure_logging, request_id_var
from api.websocket_manager import ConnectionManager
from services.whatsapp_gateway import WhatsAppGateway
from workers.connection_monitor import ConnectionMonitor
from workers.delivery_queue import DeliveryQueue

configure_logging(service_name="crm-chat-api", level=settings.log_level, enable_json=settings.log_json)

logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"


def setup_tracing() -> TracerProvider:
    """
    Configure OpenTelemetry distributed tracing.

    Spans are exported over OTLP/HTTP when OTLP_ENDPOINT is set; otherwise
    trace ids are still generated so logs can be correlated.
    """
    resource = Resource.create({
        "service.name": "crm-chat-api",
        "service.version": SERVICE_VERSION,
    })
    tracer_provider = TracerProvider(resource=resource)

    if settings.otlp_endpoint:
        tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint)))
        logger.info(f"OpenTelemetry tracing exporting to {settings.otlp_endpoint}")
    else:
        logger.info("OpenTelemetry tracing initialized without exporter")

    trace.set_tracer_provider(tracer_provider)
    return tracer_provider


tracer_provider = setup_tracing()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Starts and stops the background tasks sharing the API event loop.
    """
    logger.info("Starting CRM Chat Delivery API...")
    try:
        init_db()
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")

    subscriber = None
    if settings.redis_fanout_enabled:
        from api.redis_subscriber import RedisPubSubSubscriber
        subscriber = RedisPubSubSubscriber(app.state.connection_manager)
        await subscriber.start()

    if settings.run_delivery_workers:
        await app.state.delivery_queue.start()

    if settings.run_health_monitor:
        app.state.monitor.start()

    yield

    logger.info("Shutting down CRM Chat Delivery API...")

    await app.state.monitor.stop()
    await app.state.delivery_queue.stop()
    if subscriber is not None:
        await subscriber.stop()
    await app.state.gateway.aclose()


# Create FastAPI application
app = FastAPI(
    title="CRM Chat Delivery API",
    description="Real-time WhatsApp chat delivery: sockets, webhook ingestion and outbound queue",
    version=SERVICE_VERSION,
    lifespan=lifespan
)

# Long-lived components, created once and shared through app.state
connection_manager = ConnectionManager()
gateway = WhatsAppGateway()
app.state.session_factory = SessionLocal
app.state.connection_manager = connection_manager
app.state.gateway = gateway
app.state.delivery_queue = DeliveryQueue(SessionLocal, gateway, broadcaster=connection_manager)
app.state.monitor = ConnectionMonitor(gateway, connection_manager)

# Tracing instrumentation
FastAPIInstrumentor.instrument_app(app)
SQLAlchemyInstrumentor().instrument(engine=engine)

# Exposes /metrics with HTTP request metrics plus the chat delivery metrics
Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Metrics"])


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add unique request_id to each request.
    The request_id is included in logs for request tracing.
    """
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)

        try:
            logger.info(
                f"{request.method} {request.url.path} - "
                f"Client: {request.client.host if request.client else 'unknown'}"
            )
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(f"Response: {response.status_code}")
            return response
        finally:
            request_id_var.reset(token)


app.add_middleware(RequestIDMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", tags=["Health"])
async def root():
    return {
        "message": "CRM Chat Delivery API",
        "version": SERVICE_VERSION,
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready"
    }


# Register endpoint routers
from api.endpoints import chat_router, websocket_router  # noqa: E402
from api.health import router as health_router  # noqa: E402
from api.whatsapp import router as whatsapp_router  # noqa: E402

app.include_router(health_router)
app.include_router(whatsapp_router, prefix="/api/whatsapp", tags=["WhatsApp"])
app.include_router(chat_router, prefix="/api/chat", tags=["Chat"])
app.include_router(websocket_router, tags=["WebSocket"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower()
    )
