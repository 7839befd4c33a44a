"""
Parley Webhook Server

FastAPI server that receives Instagram Messaging webhooks and replies to
customers on behalf of the registered tenants.

Endpoints:
- GET /webhook: Subscription handshake (hub.mode / hub.verify_token / hub.challenge)
- POST /webhook: Event delivery, acknowledged immediately
- GET /health: Health check
- GET /stats: Orchestrator counters
- PUT /knowledge/{tenant_id}/sources/{source_id}: Sync one knowledge source
- DELETE /knowledge/{tenant_id}/sources/{source_id}: Retire one knowledge source

Pipeline per delivery:
1. Verify X-Hub-Signature-256
2. Hand the raw body to the worker pool
3. Return {"ok": true}; parsing, dedup and replies happen on the pool
"""

import argparse
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from ..common.config import ParleyConfig, load_config, ensure_directories
from ..common.embedding_service import EmbeddingService
from ..common.errors import EmbeddingError
from ..common.instagram_client import InstagramClient
from ..common.interaction_store import JsonInteractionStore
from ..common.knowledge_index import KnowledgeIndexer, LocalKnowledgeIndex
from ..common.llm_client import LLMClient
from ..common.tenants import TenantRegistry
from .context_builder import ContextBuilder
from .correlation_cache import CorrelationCache
from .handlers import InstagramHandler
from .processor import EventOrchestrator
from .reply_dispatcher import ReplyDispatcher

logger = logging.getLogger("parley.orchestrator.server")


# Global state
config: Optional[ParleyConfig] = None
instagram_handler: Optional[InstagramHandler] = None
orchestrator: Optional[EventOrchestrator] = None
indexer: Optional[KnowledgeIndexer] = None
tenants: Optional[TenantRegistry] = None
correlation_cache: Optional[CorrelationCache] = None
executor: Optional[ThreadPoolExecutor] = None
_closeables: list = []


def build_components(cfg: ParleyConfig) -> Dict[str, Any]:
    """Wire every collaborator from configuration"""
    ensure_directories(cfg)

    registry = TenantRegistry.from_config(cfg.tenants)
    if not len(registry):
        logger.warning("No tenants configured, every delivery will be a routing miss")

    store = JsonInteractionStore(cfg.storage.interactions_path if cfg.storage.persist else None)
    index = LocalKnowledgeIndex(
        cfg.storage.knowledge_path if cfg.storage.persist else None,
        dimensions=cfg.embedding.dimensions,
    )

    embedding_service = EmbeddingService(
        provider=cfg.embedding.provider,
        model=cfg.embedding.model,
        dimensions=cfg.embedding.dimensions,
        google_api_key=cfg.embedding.google_api_key or None,
        openai_api_key=cfg.embedding.openai_api_key or None,
    )
    llm_client = LLMClient(
        provider=cfg.llm.provider,
        model=cfg.llm.model,
        anthropic_api_key=cfg.llm.anthropic_api_key or None,
        openai_api_key=cfg.llm.openai_api_key or None,
        google_api_key=cfg.llm.google_api_key or None,
        max_tokens=cfg.llm.max_tokens,
        timeout=cfg.llm.timeout,
    )
    channel = InstagramClient(cfg.server.graph_api_url)

    orch_cfg = cfg.orchestrator
    pool = ThreadPoolExecutor(max_workers=orch_cfg.worker_threads, thread_name_prefix="parley-worker")
    cache = CorrelationCache(window_seconds=orch_cfg.correlation_window_seconds)

    builder = ContextBuilder(
        store=store,
        index=index,
        embedding_service=embedding_service,
        history_limit=orch_cfg.history_limit,
        top_k=orch_cfg.retrieval_top_k,
        regreet_after_hours=orch_cfg.regreet_after_hours,
    )
    dispatcher = ReplyDispatcher(
        channel,
        max_message_length=orch_cfg.max_message_length,
        chunk_size=orch_cfg.chunk_size,
        chunk_delay_seconds=orch_cfg.chunk_delay_seconds,
    )
    handler = InstagramHandler(
        verify_token=cfg.server.verify_token,
        app_secret=cfg.server.app_secret,
    )

    return {
        "handler": handler,
        "tenants": registry,
        "correlation_cache": cache,
        "executor": pool,
        "indexer": KnowledgeIndexer(index, embedding_service),
        "orchestrator": EventOrchestrator(
            handler=handler,
            tenants=registry,
            store=store,
            context_builder=builder,
            llm_client=llm_client,
            dispatcher=dispatcher,
            correlation_cache=cache,
            executor=pool,
        ),
        "closeables": [embedding_service, llm_client, channel],
        "llm_available": llm_client.is_available,
        "embedding_available": embedding_service.is_available,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize components on startup"""
    global config, instagram_handler, orchestrator, indexer, tenants
    global correlation_cache, executor, _closeables

    logger.info("Starting up...")

    config = load_config()
    components = build_components(config)

    instagram_handler = components["handler"]
    orchestrator = components["orchestrator"]
    indexer = components["indexer"]
    tenants = components["tenants"]
    correlation_cache = components["correlation_cache"]
    executor = components["executor"]
    _closeables = components["closeables"]

    if not components["llm_available"]:
        logger.warning("Completion client unavailable (%s), replies will fail", config.llm.provider)
    if not components["embedding_available"]:
        logger.warning("Embedding client unavailable (%s), replies will fail", config.embedding.provider)
    if not config.server.app_secret:
        logger.warning("INSTAGRAM_APP_SECRET not set, webhook signatures are not verified")

    logger.info(
        "Ready to receive events (%d tenants, %d workers, %.1fs correlation window)",
        len(tenants), config.orchestrator.worker_threads, config.orchestrator.correlation_window_seconds,
    )

    yield

    # Cleanup
    logger.info("Shutting down...")
    orchestrator.flush_pending_shares()
    executor.shutdown(wait=True)
    for closeable in _closeables:
        closeable.close()


app = FastAPI(
    title="Parley",
    description="Grounded Instagram DM replies via webhooks",
    version="0.1.0",
    lifespan=lifespan,
)


# =============================================================================
# Request/Response Models
# =============================================================================

class KnowledgeSyncRequest(BaseModel):
    """Knowledge source content"""
    text: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/health")
async def health():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "parley",
        "initialized": orchestrator is not None,
        "tenants": len(tenants) if tenants else 0,
    }


@app.get("/webhook")
async def verify_webhook(
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
):
    """Subscription handshake: echo the challenge when the token matches"""
    if not instagram_handler:
        raise HTTPException(status_code=503, detail="Handler not initialized")

    challenge = instagram_handler.verify_subscription(hub_mode, hub_verify_token, hub_challenge)
    if challenge is None:
        logger.warning("Webhook verification failed (mode=%s)", hub_mode)
        raise HTTPException(status_code=403, detail="Verification failed")

    logger.info("Webhook subscription verified")
    return PlainTextResponse(challenge)


@app.post("/webhook")
async def receive_webhook(
    request: Request,
    x_hub_signature_256: Optional[str] = Header(None),
):
    """
    Handle Instagram webhook deliveries.

    Always acknowledges a correctly signed delivery; the payload is processed
    on the worker pool.
    """
    if not instagram_handler or not orchestrator:
        raise HTTPException(status_code=503, detail="Handler not initialized")

    body = await request.body()

    if not instagram_handler.verify_signature(body, x_hub_signature_256 or ""):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        orchestrator.submit(body)
    except RuntimeError as e:
        # Worker pool closed during shutdown
        logger.error("Could not schedule delivery: %s", e)

    # Acknowledge receipt
    return JSONResponse({"ok": True})


@app.get("/stats")
async def get_stats():
    """Get Parley statistics"""
    stats = {
        "service": "parley",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if orchestrator:
        stats["orchestrator"] = orchestrator.get_stats()
    return stats


@app.put("/knowledge/{tenant_id}/sources/{source_id}")
def sync_knowledge(tenant_id: str, source_id: str, request: KnowledgeSyncRequest):
    """Write a new chunk for the source, then retire its older chunks"""
    _require_tenant(tenant_id)

    try:
        chunk = indexer.sync_source(tenant_id, source_id, request.text, request.metadata)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RuntimeError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except EmbeddingError as e:
        logger.error("Embedding failed for source %s of tenant %s: %s", source_id, tenant_id, e)
        raise HTTPException(status_code=502, detail="Embedding failed")

    return {
        "status": "synced",
        "chunk_id": chunk.id,
        "source_id": source_id,
        "version": chunk.metadata.get("version"),
    }


@app.delete("/knowledge/{tenant_id}/sources/{source_id}")
def retire_knowledge(tenant_id: str, source_id: str):
    """Retire every chunk of a source"""
    _require_tenant(tenant_id)

    removed = indexer.retire_source(tenant_id, source_id)
    if not removed:
        raise HTTPException(status_code=404, detail="Source not found")
    return {"status": "deleted", "source_id": source_id, "removed": removed}


def _require_tenant(tenant_id: str) -> None:
    if not indexer or not tenants:
        raise HTTPException(status_code=503, detail="Knowledge index not initialized")
    if tenants.get(tenant_id) is None:
        raise HTTPException(status_code=404, detail="Tenant not found")


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server():
    """Run the Parley server"""
    import uvicorn

    load_dotenv()
    cfg = load_config()

    parser = argparse.ArgumentParser(description="Parley webhook server")
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind.")
    parser.add_argument("--port", type=int, default=cfg.server.port, help="Port to listen on.")
    parser.add_argument("--log-level", default=cfg.server.log_level, help="Logging level.")
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info("Starting server on port %d", args.port)
    uvicorn.run(
        "parley.orchestrator.server:app",
        host=args.host,
        port=args.port,
        reload=False,
    )


if __name__ == "__main__":
    run_server()
