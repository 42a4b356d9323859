import logging
import os

from fastapi import FastAPI

from .routes.mail import router as mail_router
from .services.token_manager import TokenManager


# Configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Mail Relay API", version="0.1.0")

# Shared by all requests so cached tokens outlive a single call
app.state.token_manager = TokenManager()

app.include_router(mail_router)


@app.get("/api/health")
def health():
    """Minimal liveness endpoint."""
    return {"status": "ok"}
