"""
Inbound webhook server.

One POST route per configured webhook path. The JSON body is validated as a
WebhookPayload, formatted with the route's template and sent through the
shared Telegram client.

Responses:
    200 {"status": "success"}
    400 {"status": "error", "detail": ...}  malformed body
    500 {"status": "error", "detail": ...}  delivery failure
"""
import json
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from automation_hub import __version__
from automation_hub.config_schema import WebhookConfig
from automation_hub.error_handling import ErrorCode, log_error_with_context
from automation_hub.logging_context import new_correlation_id, with_logging_context
from automation_hub.models import WebhookPayload
from automation_hub.processors import WebhookProcessor
from automation_hub.runtime import AppContext
from automation_hub.telegram_client import TelegramError

logger = logging.getLogger(__name__)


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "detail": detail})


def _make_handler(hook: WebhookConfig, processor: WebhookProcessor):
    async def handle_webhook(request: Request) -> JSONResponse:
        with with_logging_context(correlation_id=new_correlation_id(), processor=hook.name):
            try:
                body = await request.json()
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.error(f"Failed to decode webhook request on {hook.path}: {e}")
                return _error(400, "Invalid request")

            if not isinstance(body, dict):
                logger.error(f"Webhook body on {hook.path} is not a JSON object")
                return _error(400, "Invalid request")

            try:
                payload = WebhookPayload.model_validate(body)
            except ValidationError as e:
                logger.error(f"Invalid webhook payload on {hook.path}: {e.error_count()} error(s)")
                return _error(400, "Invalid request: 'name' and 'path' are required")

            try:
                # requests is blocking; keep it off the event loop
                await run_in_threadpool(processor.process, payload)
            except TelegramError as e:
                log_error_with_context(
                    e, ErrorCode.WEBHOOK_PROCESSING_FAILED, f"Processing webhook '{hook.name}'",
                    context={'path': hook.path, 'name': payload.name}
                )
                return _error(500, "Processing failed")

            logger.info(f"Webhook '{hook.name}' processed: {payload.name}")
            return JSONResponse(status_code=200, content={"status": "success"})

    handle_webhook.__name__ = f"handle_{hook.name}_webhook"
    return handle_webhook


def create_webhook_app(context: AppContext) -> FastAPI:
    """Build the FastAPI app with one route per configured webhook."""
    app = FastAPI(title="automation-hub", version=__version__)

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "processors": [p.name for p in context.registry],
            "webhooks": [hook.path for hook in context.webhooks],
        }

    for hook in context.webhooks:
        processor = WebhookProcessor(hook.config, context.telegram)
        app.add_api_route(hook.path, _make_handler(hook, processor), methods=["POST"])
        logger.info(f"Registered webhook '{hook.name}' at POST {hook.path}")

    return app
