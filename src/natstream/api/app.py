"""FastAPI application factory for the natstream fusion API.

Endpoints: /health, /config (non-secret fusion settings), POST /chat (SSE)
and POST /chat/abort.
"""
from __future__ import annotations

import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from core import metrics
from core.config import ConfigError, get_config
from core.llm import abort_registry
from core.logging_setup import configure_logging
from natstream.api.routes.chat import router as chat_router


def create_app() -> FastAPI:
    try:
        configure_logging(get_config().logging)
    except ConfigError:
        # invalid config surfaces on /chat; keep default logging here
        configure_logging()
    app = FastAPI(
        title="natstream API",
        version="0.1.0",
        docs_url=None,
        redoc_url=None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():  # noqa: D401
        return {"status": "ok"}

    @app.get("/config")
    def config():  # noqa: D401
        fusion = get_config().fusion
        return {
            "delivery": {
                "configured": bool(fusion.delivery.endpoint_url),
                "model": fusion.delivery.model,
                "temperature": fusion.delivery.temperature,
                "max_tokens": fusion.delivery.max_tokens,
            },
            "reasoning": {
                "configured": bool(fusion.reasoning.endpoint_url),
                "model": fusion.reasoning.model,
                "inject_thought_prompt": fusion.reasoning.inject_thought_prompt,
            },
            "markers": fusion.markers.model_dump(),
            "pacing": fusion.pacing.model_dump(),
            "loop": fusion.loop.model_dump(),
            "fallback_behavior": fusion.fallback_behavior,
        }

    # Abort endpoint -------------------------------------------------------
    @app.post("/chat/abort")
    def abort_turn(payload: dict):  # noqa: D401
        tid = payload.get("turn_id") if isinstance(payload, dict) else None
        if not tid:
            return {"ok": False, "error": "missing-turn_id"}
        applied = abort_registry.abort(str(tid))
        metrics.inc(
            "turn_abort_requests_total",
            {"result": "applied" if applied else "unknown-id"},
        )
        return {"ok": applied, "turn_id": tid}

    app.include_router(chat_router)

    @app.middleware("http")
    async def _metrics_mw(request: Request, call_next):  # noqa: D401
        start = time.time()
        labels = {"route": request.url.path, "method": request.method}
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            duration_ms = (time.time() - start) * 1000.0
            metrics.inc("api_request_total", labels)
            metrics.observe("api_request_latency_ms", duration_ms, labels)
            if status >= 400:
                metrics.inc(
                    "api_request_errors_total", labels | {"status": status}
                )

    return app


app = create_app()


def main() -> None:  # pragma: no cover
    import uvicorn

    uvicorn.run(
        "natstream.api.app:app", host="127.0.0.1", port=8000, reload=False
    )


if __name__ == "__main__":  # pragma: no cover
    main()
