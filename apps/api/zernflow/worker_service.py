"""HTTP wrapper around the tick worker for platforms that require a listening port."""

from __future__ import annotations

import asyncio
import contextlib
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response

from zernflow import worker


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = asyncio.create_task(worker.worker_loop())
    app.state.worker_task = task
    try:
        yield
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


app = FastAPI(lifespan=lifespan)


@app.get("/health")
def health(response: Response) -> dict:
    """503 once the tick loop has died so the platform restarts the container."""
    task = getattr(app.state, "worker_task", None)
    if task is None or task.done():
        response.status_code = 503
        return {"status": "stopped"}
    last_tick = worker.last_tick_at
    return {"status": "ok", "last_tick_at": last_tick.isoformat() if last_tick else None}


def main() -> None:
    import uvicorn

    port = int(os.getenv("PORT", "8080"))
    host = os.getenv("HOST", "0.0.0.0")
    # nosec B104 - container platforms require binding to all interfaces.
    uvicorn.run("zernflow.worker_service:app", host=host, port=port)


if __name__ == "__main__":
    main()
