from __future__ import annotations

import os
import socket
import time

from fastapi import FastAPI, HTTPException

VERSION = os.getenv("VERSION", "dev")

app = FastAPI(title=f"FCC worker {VERSION}")

APP_STATE = {"cpu_load": 0, "is_corrupted": False}


@app.get("/health")
def health() -> dict[str, str]:
    if APP_STATE["is_corrupted"]:
        raise HTTPException(status_code=503, detail="Corrupted")
    # Slow enough to trip the health checker's probe timeout.
    if APP_STATE["cpu_load"] > 50:
        time.sleep(3)
    return {"status": "healthy"}


@app.get("/api/whoami")
def whoami() -> dict[str, str]:
    if APP_STATE["is_corrupted"]:
        raise HTTPException(status_code=500, detail="DATA_ERR")
    return {"version": VERSION, "host": socket.gethostname()}


# Fault injection for exercising replacement and draining.

@app.post("/simulate/cpu/{level}")
def set_cpu(level: int) -> dict[str, int]:
    APP_STATE["cpu_load"] = level
    return {"cpu_load": level}


@app.post("/simulate/corruption")
def corrupt() -> dict[str, bool]:
    APP_STATE["is_corrupted"] = True
    return {"is_corrupted": True}


@app.post("/simulate/reset")
def reset() -> dict[str, bool]:
    APP_STATE["cpu_load"] = 0
    APP_STATE["is_corrupted"] = False
    return {"is_corrupted": False}
