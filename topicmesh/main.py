from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from topicmesh.api.routes import research
from topicmesh.config import settings
from topicmesh.services.logger import log_event
from topicmesh.services.runtime import build_runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    app.state.runtime = build_runtime(settings)
    app.state.jobs = research.ResearchJobs()
    log_event("app_started", "TopicMesh API started", searxng=settings.searxng_base_url)
    yield
    # Shutdown
    await app.state.jobs.shutdown()
    await app.state.runtime.aclose()


app = FastAPI(
    title="TopicMesh",
    description="Multi-agent recursive topic research over SearXNG",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(research.router)


@app.get("/api/health")
async def health():
    runtime = getattr(app.state, "runtime", None)
    breaker = runtime.breaker.state.value if runtime else "unknown"
    return {"status": "ok", "service": "topicmesh", "search_breaker": breaker}
