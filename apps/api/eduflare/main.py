from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from eduflare.api.routes import router as api_router
from eduflare.core.config import get_settings
from eduflare.core.events import InternalEvent, event_bus
from eduflare.logging import configure_logging
from eduflare.middleware.correlation_id import CorrelationIdMiddleware
from eduflare.middleware.request_logging import RequestLoggingMiddleware
from eduflare.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("eduflare.lifecycle")
_subscriptions_registered = False

_case_event_types = [
    "cases.lead.converted",
    "cases.student.submitted",
    "cases.application.submitted",
    "cases.application.rejected",
    "cases.application.returned",
    "cases.application.accepted",
    "cases.contract.signed",
    "cases.contract.cancelled",
    "cases.offer.released",
    "cases.refund.recorded",
    "cases.unlock.requested",
    "cases.unlock.resolved",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_case_event(event: InternalEvent) -> None:
    payload = event.payload if isinstance(event.payload, dict) else {}
    inner = payload.get("payload") if isinstance(payload.get("payload"), dict) else {}
    entity_id = inner.get("student_id") or inner.get("lead_id") or inner.get("contract_id")
    logger.info("case_event", extra={"event_name": event.name, "entity_id": entity_id})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _case_event_types:
            event_bus.subscribe(event_name, _on_case_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="EduFlare API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
