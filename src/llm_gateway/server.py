"""OpenAI-compatible HTTP surface (FastAPI)."""

from __future__ import annotations

import argparse
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from llm_gateway.config import GatewayConfig, load_config
from llm_gateway.errors import GatewayError, InvalidRequestError, TranslationError
from llm_gateway.gateway import ChatGateway
from llm_gateway.relay import AbortRegistry, StreamRelay
from llm_gateway.tools import default_registry

_logger = logging.getLogger(__name__)

_SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}
_INTERNAL_ERROR_MESSAGE = "The gateway failed to complete the request."


def error_response(exc: GatewayError) -> JSONResponse:
    if isinstance(exc, TranslationError):
        _logger.error("Translation failure: %s", exc, exc_info=exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def internal_error_response(exc: Exception) -> JSONResponse:
    _logger.error("Unhandled failure serving request: %s", exc, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "upstream_error", "message": _INTERNAL_ERROR_MESSAGE},
    )


def create_app(gateway: ChatGateway, *, aborts: AbortRegistry | None = None) -> FastAPI:
    """Build the FastAPI app serving ``gateway``."""
    aborts = aborts or AbortRegistry()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await gateway.aclose()

    app = FastAPI(title="llm-gateway", lifespan=lifespan)
    app.state.gateway = gateway
    app.state.aborts = aborts

    @app.exception_handler(GatewayError)
    async def _handle_gateway_error(_: Request, exc: GatewayError) -> JSONResponse:
        return error_response(exc)

    @app.exception_handler(Exception)
    async def _handle_unexpected_error(_: Request, exc: Exception) -> JSONResponse:
        return internal_error_response(exc)

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request) -> Response:
        try:
            payload: Any = await request.json()
        except json.JSONDecodeError as exc:
            raise InvalidRequestError("Request body must be valid JSON.") from exc
        if not isinstance(payload, dict):
            raise InvalidRequestError("Request body must be a JSON object.")
        if not payload.get("provider_id") and request.headers.get("x-provider-id"):
            payload["provider_id"] = request.headers["x-provider-id"]

        req = gateway.validate(payload)
        if not req.stream:
            try:
                response = await gateway.chat(req)
            except GatewayError:
                raise
            except Exception as exc:
                return internal_error_response(exc)
            return JSONResponse(content=response.to_payload())

        request_id = request.headers.get("x-request-id")
        user_id = request.headers.get("x-user-id")
        cancel = aborts.register(request_id, user_id=user_id) if request_id else None
        try:
            relay = StreamRelay(gateway.stream(req, cancel=cancel), cancel=cancel)
            await relay.start()
        except BaseException as exc:
            if request_id:
                aborts.unregister(request_id)
            if isinstance(exc, GatewayError):
                return error_response(exc)
            if isinstance(exc, Exception):
                return internal_error_response(exc)
            raise

        async def _body() -> AsyncIterator[str]:
            try:
                async for frame in relay.frames():
                    yield frame
            finally:
                if request_id:
                    aborts.unregister(request_id)

        return StreamingResponse(_body(), media_type="text/event-stream", headers=_SSE_HEADERS)

    @app.post("/v1/chat/completions/{request_id}/abort")
    async def abort_stream(request_id: str, request: Request) -> JSONResponse:
        aborted = aborts.abort(request_id, user_id=request.headers.get("x-user-id"))
        return JSONResponse(
            status_code=200 if aborted else 404,
            content={"request_id": request_id, "aborted": aborted},
        )

    @app.get("/v1/models")
    async def list_models(request: Request) -> JSONResponse:
        provider_id = request.query_params.get("provider_id") or request.headers.get("x-provider-id")
        models = await gateway.list_models(provider_id, user_id=request.headers.get("x-user-id"))
        data = [{"object": "model", **model} for model in models]
        return JSONResponse(content={"object": "list", "data": data})

    return app


def build_app(config: GatewayConfig) -> FastAPI:
    return create_app(ChatGateway.from_config(config, tools=default_registry()))


def main(argv: list[str] | None = None) -> None:
    """Run the gateway with uvicorn."""
    parser = argparse.ArgumentParser(prog="llm-gateway", description=__doc__)
    parser.add_argument("--config", help="path to llm_gateway.yaml")
    parser.add_argument("--host")
    parser.add_argument("--port", type=int)
    args = parser.parse_args(argv)

    config = load_config(args.config)
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        build_app(config),
        host=args.host or config.host,
        port=args.port or config.port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
