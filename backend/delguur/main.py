"""FastAPI application entrypoint."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from delguur.api.errors import install_error_handlers
from delguur.discovery import api as discovery_api
from delguur.infra import postgres
from delguur.infra.redis import redis_client
from delguur.moderation.api import router as moderation_router
from delguur.moderation.domain import container
from delguur.moderation.domain.policy import load_policy
from delguur.moderation.workers.runner import spawn_workers as spawn_moderation_workers
from delguur.obs import init as obs_init
from delguur.resilience import api as system_api
from delguur.settings import settings

DEFAULT_POLICY_PATH = Path(__file__).resolve().parent.parent / "config" / "moderation.yml"


def _policy_path() -> str:
	return settings.moderation_policy_path or str(DEFAULT_POLICY_PATH)


@asynccontextmanager
async def lifespan(app: FastAPI):
	use_postgres = settings.storage_backend.lower() == "postgres"
	if use_postgres:
		pool = await postgres.init_pool()
		container.configure_postgres(pool, redis_client, policy_path=_policy_path())
	else:
		container.configure(policy=load_policy(_policy_path()))
	worker_tasks: list[asyncio.Task] = []
	if settings.moderation_workers_enabled:
		worker_tasks.extend(spawn_moderation_workers(redis_client))
	try:
		yield
	finally:
		for task in worker_tasks:
			task.cancel()
		if worker_tasks:
			await asyncio.gather(*worker_tasks, return_exceptions=True)
		if use_postgres:
			await postgres.close_pool()


app = FastAPI(title="Nutgiin Delguur Trust", lifespan=lifespan)
install_error_handlers(app)
obs_init(app)

app.include_router(moderation_router, tags=["moderation"])
app.include_router(discovery_api.router)
app.include_router(system_api.router)


@app.get("/health", include_in_schema=False)
async def health() -> dict[str, str]:
	return {"status": "ok", "service": settings.service_name, "commit": settings.git_commit}


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
	return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
