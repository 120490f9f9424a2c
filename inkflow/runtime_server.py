"""Runtime launcher for the inkflow service."""

from __future__ import annotations

import multiprocessing
import os

import uvicorn


def _worker_count() -> int:
    explicit = os.getenv("UVICORN_WORKERS")
    if explicit:
        try:
            value = int(explicit)
            if value > 0:
                return value
        except ValueError:
            pass
    # The in-process callback broker only resolves futures within one worker.
    if os.getenv("TOKEN_STORE_BACKEND", "memory").strip().lower() == "memory":
        return 1
    return max(1, multiprocessing.cpu_count() or 1)


def main() -> None:
    workers = _worker_count()
    port = int(os.getenv("PORT", "8080"))
    app_path = os.getenv("FASTAPI_APP", "inkflow.main:create_app")
    uvicorn.run(
        app_path,
        host="0.0.0.0",
        port=port,
        factory=True,
        workers=workers,
        lifespan="on",
    )


if __name__ == "__main__":  # pragma: no cover - exercised in runtime
    main()
