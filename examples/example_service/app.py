from __future__ import annotations

import os
import time

from fastapi import FastAPI, HTTPException


VERSION = os.getenv("VERSION", "dev")
# Seconds after start before /health reports healthy; demos a slow health gate.
READY_AFTER_S = float(os.getenv("READY_AFTER_S", "0"))
# Set to a truthy value to build a candidate that never passes the gate.
BROKEN = os.getenv("BROKEN", "").lower() in {"1", "true", "yes"}

STARTED_AT = time.monotonic()

app = FastAPI(title=f"Example Service {VERSION}")


@app.get("/health")
def health() -> dict[str, str]:
    if BROKEN or time.monotonic() - STARTED_AT < READY_AFTER_S:
        raise HTTPException(status_code=503, detail="not ready")
    return {"status": "healthy", "version": VERSION}


@app.get("/version")
def version() -> dict[str, str]:
    return {"version": VERSION}
