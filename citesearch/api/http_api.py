"""
HTTP API adapter for the citesearch pipeline.

Architectural role:
- Expose the retrieval pipeline and the cited answer stage over HTTP.
- Enforce adapter-level input validation.
- Delegate all work to `citesearch.core.engine.SearchPipeline`.
- Normalize output to JSON or SSE transport contracts.

Endpoint responsibilities:
- `GET /health`: liveness probe.
- `POST /v1/search`: run the pipeline and return numbered citations.
- `POST /v1/answer`: run the pipeline, then stream (SSE) or return the cited
  answer together with its citations.

Input validation behavior:
- Blank `query` -> HTTP 400.
- Non-positive `result_limit` / `top_k` -> HTTP 422 (schema validation).

Error handling strategy:
- `ProviderError` (search provider unavailable) -> HTTP 502.
- Any other `PipelineError`, including configuration errors raised while the
  pipeline is built -> HTTP 500 with the rendered error.
- Answer failures after streaming has started are sent as a final
  `{"error": ...}` frame before `[DONE]`.

Side effects:
- Loads environment variables at import time via `load_dotenv()`.
- Builds the pipeline lazily on first request and reuses it.
- `serve()` (console script `citesearch-serve`) runs `app` under uvicorn.
"""

from dotenv import load_dotenv

load_dotenv()

import asyncio
import json
import logging
import os
import threading
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from starlette.concurrency import iterate_in_threadpool

from citesearch.api.logging_config import configure_logging
from citesearch.core.engine import SearchPipeline, build_pipeline
from citesearch.core.errors import AnswerError, PipelineError, ProviderError


logger = logging.getLogger(__name__)


# ============================================================
# Request Schemas
# ============================================================

class SearchRequest(BaseModel):
    query: str
    result_limit: Optional[int] = Field(default=None, gt=0)
    top_k: Optional[int] = Field(default=None, gt=0)


class AnswerRequest(SearchRequest):
    stream: bool = True


# ============================================================
# Helpers
# ============================================================

def error_response(exc: PipelineError) -> JSONResponse:
    """Map a pipeline failure to an HTTP error body."""
    status_code = 502 if isinstance(exc, ProviderError) else 500
    return JSONResponse(
        status_code=status_code,
        content={"error": str(exc), "phase": exc.phase},
    )


def sse_frame(data) -> str:
    return f"data: {json.dumps(data)}\n\n"


# ============================================================
# Application Factory
# ============================================================

def create_app(pipeline_factory: Callable[[], SearchPipeline] = build_pipeline) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        pipeline_factory: Zero-argument callable returning a `SearchPipeline`.
            Called once, on the first request that needs it.
    """
    app = FastAPI(title="citesearch")
    state = {"pipeline": None}
    lock = threading.Lock()

    def get_pipeline() -> SearchPipeline:
        with lock:
            if state["pipeline"] is None:
                state["pipeline"] = pipeline_factory()
            return state["pipeline"]

    async def run_search(body: SearchRequest):
        pipeline = get_pipeline()
        records = await pipeline.arun(
            body.query,
            result_limit=body.result_limit,
            top_k=body.top_k,
        )
        return pipeline, records

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/v1/search")
    async def search(body: SearchRequest):
        """Return numbered citation records for `query`, nearest first."""
        if not body.query.strip():
            return JSONResponse(status_code=400, content={"error": "query must not be blank"})

        try:
            _, records = await run_search(body)
        except PipelineError as exc:
            return error_response(exc)

        return {
            "query": body.query,
            "citations": [record.to_dict() for record in records],
        }

    @app.post("/v1/answer")
    async def answer(body: AnswerRequest, request: Request):
        """
        Answer `query` with inline `[n]` citations.

        Response formatting:
        - `stream=true`: SSE frames `{"delta": "..."}`, one optional
          `{"error": "..."}` frame, then `data: [DONE]`.
        - `stream=false`: JSON `{query, answer, citations}`.
        """
        if not body.query.strip():
            return JSONResponse(status_code=400, content={"error": "query must not be blank"})

        try:
            pipeline, records = await run_search(body)
        except PipelineError as exc:
            return error_response(exc)

        citations = [record.to_dict() for record in records]

        if not body.stream:
            try:
                text = await asyncio.to_thread(
                    lambda: "".join(pipeline.stream_answer(body.query, records))
                )
            except PipelineError as exc:
                return error_response(exc)
            return {"query": body.query, "answer": text, "citations": citations}

        fragments = pipeline.stream_answer(body.query, records)

        async def event_generator():
            """
            Yield SSE frames for the streamed answer.

            Side effects:
            - Stops work when the client disconnects.
            - Closes the backend generator when the stream ends.
            """
            try:
                yield sse_frame({"citations": citations})
                async for fragment in iterate_in_threadpool(fragments):
                    if await request.is_disconnected():
                        logger.info("Client disconnected during answer stream")
                        return
                    yield sse_frame({"delta": fragment})
            except AnswerError as exc:
                logger.warning("Answer stream failed: %s", exc)
                yield sse_frame({"error": str(exc)})
            except (asyncio.CancelledError, BrokenPipeError, ConnectionResetError):
                logger.info("Answer stream cancelled by client")
                return
            finally:
                if hasattr(fragments, "close"):
                    fragments.close()

            yield "data: [DONE]\n\n"

        return StreamingResponse(event_generator(), media_type="text/event-stream")

    return app


configure_logging(os.getenv("LOG_LEVEL", "INFO"))
app = create_app()


def serve() -> None:
    """
    Run the API under uvicorn.

    Reads `HOST` (default `127.0.0.1`) and `PORT` (default `8000`).
    """
    uvicorn.run(
        "citesearch.api.http_api:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        log_level=os.getenv("LOG_LEVEL", "INFO").lower(),
    )


if __name__ == "__main__":
    serve()
