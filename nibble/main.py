from __future__ import annotations

"""FastAPI application entrypoint."""

import logging

from fastapi import FastAPI

from nibble import config
from nibble.api import router
from nibble.core import Nibble

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Nibble Workflow Engine",
    description="Adapter catalog and DAG engine mixing LLM, HTTP and on-chain steps.",
    version="0.1.0",
)
app.include_router(router)
app.state.nibble = Nibble.from_config()


@app.on_event("shutdown")
async def shutdown_event() -> None:
    await app.state.nibble.aclose()


@app.get("/health", tags=["system"])
def health() -> dict:
    return {"status": "ok", "nibble": app.state.nibble.name}


def run() -> None:
    import uvicorn

    uvicorn.run("nibble.main:app", host=config.API_HOST, port=config.API_PORT)


if __name__ == "__main__":
    run()
