# app/main.py
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.core.config import settings
from app.api.endpoints import payment
from app.api.models.payment import HealthResponse
from app.x402.constants import X_PAYMENT_HEADER, X_PAYMENT_RESPONSE_HEADER
from app.x402.handshake import create_handshake_endpoint
from app.x402.sessions import InMemorySessionStore
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the session store and handshake endpoint; release them at shutdown."""
    session_store = InMemorySessionStore(ttl_seconds=settings.X402_SESSION_TTL_SECONDS)
    handshake, broadcaster = create_handshake_endpoint(settings, session_store)
    app.state.session_store = session_store
    app.state.handshake = handshake
    logger.info(
        f"x402: Payment gateway ready on {settings.X402_NETWORK}, "
        f"facilitator {settings.X402_FACILITATOR_URL}, "
        f"acceptance policy {settings.X402_ACCEPTANCE_POLICY}"
    )
    try:
        yield
    finally:
        session_store.clear()
        await handshake.handler.aclose()
        if broadcaster is not None:
            await broadcaster.close()
        logger.info("x402: Payment gateway stopped")


app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_PREFIX}/openapi.json",
    lifespan=lifespan,
)

# Browser clients send X-PAYMENT and must be able to read X-PAYMENT-RESPONSE
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[X_PAYMENT_HEADER, X_PAYMENT_RESPONSE_HEADER],
)

app.include_router(payment.router, prefix=settings.API_PREFIX, tags=["payment"])


@app.get(f"{settings.API_PREFIX}/health", response_model=HealthResponse, summary="Health Check", tags=["default"])
def health_check():
    """ Basic health check endpoint. """
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}
