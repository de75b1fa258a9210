"""FastAPI application entrypoint for the moderation pipeline."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from photoguard import obs
from photoguard.infra import postgres
from photoguard.infra.redis import redis_client
from photoguard.moderation import build_pipeline
from photoguard.moderation import router as moderation_router
from photoguard.settings import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
	obs.init()
	pipeline = await build_pipeline(settings)
	app.state.moderation_pipeline = pipeline
	await pipeline.initialize()
	try:
		yield
	finally:
		await pipeline.shutdown()
		await redis_client.close()
		await postgres.close_pool()


app = FastAPI(title="Photoguard Moderation", lifespan=lifespan)


@app.get("/health/live")
async def health_live() -> dict[str, str]:
	return {"status": "ok"}


@app.get("/metrics")
async def prometheus_metrics() -> Response:
	return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(moderation_router, tags=["moderation"])
