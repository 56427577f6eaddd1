from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.middleware import SlowAPIMiddleware

from authgate.api.v1 import api_router
from authgate.core.errors import register_exception_handlers
from authgate.core.limiter import limiter
from authgate.core.logging import configure_logging
from authgate.core.response_envelope import register_response_envelope
from authgate.core.security import validate_security_settings
from authgate.core.settings import settings
from authgate.events import register_event_handlers
from authgate.middlewares.mfa_gate import MfaGateMiddleware
from authgate.middlewares.request_context import RequestContextMiddleware
from authgate.middlewares.security_headers import SecurityHeadersMiddleware
from authgate.middlewares.trust_proxies import TrustedProxiesMiddleware


def create_app() -> FastAPI:
    configure_logging()
    # Missing or malformed keys stop the process here rather than on the first request.
    validate_security_settings()
    app = FastAPI(title="AuthGate", version="0.1.0")
    register_exception_handlers(app)
    register_response_envelope(app)
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(MfaGateMiddleware)
    app.add_middleware(TrustedProxiesMiddleware, proxies_count=settings.proxies_count)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, enable_hsts=settings.enable_hsts)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(api_router, prefix="/api/v1")
    register_event_handlers(app)
    return app


app = create_app()
