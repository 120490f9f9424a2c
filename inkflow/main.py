"""FastAPI application entrypoint for the inkflow OCR coordinator and pipeline."""

from __future__ import annotations

import logging
import os
import sys

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from inkflow import __version__
from inkflow.api import build_api_router
from inkflow.config import AppConfig, get_config, parse_bool
from inkflow.errors import ValidationError, WorkflowError
from inkflow.logging_setup import configure_logging
from inkflow.pipeline.run_status import RunStatusStore
from inkflow.pipeline.runner import PipelineRunner
from inkflow.pipeline.stages import StageExecutor
from inkflow.services.callbacks import LocalCallbackBroker, RoutingCallbackClient, WorkflowsCallbackClient
from inkflow.services.ingestion import ShardIngestionService
from inkflow.services.merger import ResultMerger
from inkflow.services.metrics import NullMetrics, PrometheusMetrics
from inkflow.services.object_storage import ObjectNotFoundError, create_object_storage_from_env
from inkflow.services.ocr_client import HttpOcrJobStarter
from inkflow.services.signaler import CompletionSignaler
from inkflow.services.speech import create_speech_synthesizer_from_config
from inkflow.services.token_store import create_token_store_from_env
from inkflow.transform.base import TransformProvider
from inkflow.transform.factory import create_provider_from_config
from inkflow.utils.logging_utils import structured_log

DEBUG_ENABLED = any(arg == "--debug" for arg in sys.argv) or parse_bool(os.getenv("DEBUG", "false"))
LOG_LEVEL = logging.DEBUG if DEBUG_ENABLED else logging.INFO

_API_LOG = logging.getLogger("api")


def _health_payload() -> dict[str, str]:
    return {"status": "ok"}


def _error_body(exc: WorkflowError) -> dict[str, str]:
    return {"error": exc.error_type, "cause": str(exc)}


def _build_provider(cfg: AppConfig) -> TransformProvider | None:
    try:
        return create_provider_from_config(cfg)
    except ValidationError as exc:
        structured_log(
            _API_LOG,
            logging.WARNING,
            "transform_provider_unavailable",
            provider=cfg.ai_provider,
            error=str(exc),
        )
        return None


def create_app() -> FastAPI:
    configure_logging(level=LOG_LEVEL)
    get_config.cache_clear()

    cfg = get_config()
    app = FastAPI(title="inkflow API", version=__version__)
    app.state.config = cfg

    if cfg.enable_metrics:
        app.state.metrics = PrometheusMetrics.instrument_app(app)
    else:
        app.state.metrics = NullMetrics()
    metrics = app.state.metrics

    storage = create_object_storage_from_env(cfg)
    token_store = create_token_store_from_env(cfg)
    broker = LocalCallbackBroker()
    callbacks = RoutingCallbackClient(broker, WorkflowsCallbackClient())
    app.state.object_storage = storage
    app.state.token_store = token_store
    app.state.callback_broker = broker

    merger = ResultMerger(
        storage,
        merged_prefix=cfg.merged_output_prefix,
        blocks_field=cfg.shard_blocks_field,
    )
    signaler = CompletionSignaler(callbacks, token_store, metrics=metrics)
    app.state.ingestion = ShardIngestionService(
        storage=storage,
        token_store=token_store,
        merger=merger,
        signaler=signaler,
        ocr_prefix=cfg.ocr_output_prefix,
        total_field=cfg.shard_total_field,
        fail_on_malformed_first_shard=cfg.fail_on_malformed_first_shard,
        enable_completion_claim=cfg.enable_completion_claim,
        metrics=metrics,
    )

    ocr_starter = (
        HttpOcrJobStarter(cfg.ocr_service_url, token=cfg.ocr_service_token) if cfg.ocr_service_url else None
    )
    provider = _build_provider(cfg)
    executor = StageExecutor(
        storage=storage,
        token_store=token_store,
        provider=provider,
        ocr_starter=ocr_starter,
        speech=create_speech_synthesizer_from_config(cfg),
        ocr_prefix=cfg.ocr_output_prefix,
        token_ttl_seconds=cfg.job_token_ttl_seconds,
        default_target_language=cfg.default_target_language,
        metrics=metrics,
    )
    app.state.stage_executor = executor
    run_status = RunStatusStore(storage, prefix=cfg.run_status_prefix)
    app.state.run_status = run_status
    app.state.pipeline_runner = PipelineRunner(
        executor,
        broker,
        extract_timeout=cfg.extract_timeout_seconds,
        run_status=run_status,
        metrics=metrics,
    )

    structured_log(
        _API_LOG,
        logging.INFO,
        "pipeline_components_configured",
        provider=provider.provider_name if provider else "none",
        status="ocr_starter_configured" if ocr_starter else "ocr_starter_missing",
    )

    @app.exception_handler(ValidationError)
    async def _val_handler(_r: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content=_error_body(exc))

    @app.exception_handler(WorkflowError)
    async def _workflow_handler(_r: Request, exc: WorkflowError):
        structured_log(_API_LOG, logging.ERROR, "request_failed", error_type=exc.error_type, error=str(exc))
        return JSONResponse(status_code=500, content=_error_body(exc))

    @app.exception_handler(ObjectNotFoundError)
    async def _missing_object_handler(_r: Request, exc: ObjectNotFoundError):
        structured_log(_API_LOG, logging.ERROR, "request_failed", error_type="ObjectNotFound", key=exc.key)
        return JSONResponse(status_code=500, content={"error": "ObjectNotFound", "cause": str(exc)})

    @app.get("/healthz", summary="Healthz")
    async def healthz():
        return _health_payload()

    @app.get("/readyz", include_in_schema=False)
    async def readyz():
        return _health_payload()

    app.include_router(build_api_router())

    @app.on_event("startup")
    async def _startup_diag():
        cfg.validate_required()
        routes = [getattr(r, "path", str(r)) for r in app.router.routes]
        _API_LOG.info("boot_canary", extra={"service": "inkflow", "routes": routes})

    return app


__all__ = ["create_app"]
