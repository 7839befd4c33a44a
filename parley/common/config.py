"""
Configuration Management for Parley

Loads configuration from ~/.parley/config.json and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import List

logger = logging.getLogger("parley.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".parley"
CONFIG_PATH = CONFIG_DIR / "config.json"
DATA_DIR = CONFIG_DIR / "data"


@dataclass
class ServerConfig:
    """Webhook server configuration"""
    port: int = 8080
    verify_token: str = ""
    app_secret: str = ""
    graph_api_url: str = "https://graph.facebook.com/v21.0"
    log_level: str = "INFO"


@dataclass
class EmbeddingConfig:
    """Embedding model configuration"""
    provider: str = "google"
    model: str = "gemini-embedding-001"
    dimensions: int = 3072
    google_api_key: str = ""
    openai_api_key: str = ""


@dataclass
class LLMConfig:
    """Completion provider configuration"""
    provider: str = "google"
    model: str = "gemini-2.5-flash"
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    google_api_key: str = ""
    max_tokens: int = 1024
    timeout: float = 60.0


@dataclass
class OrchestratorConfig:
    """Event orchestration tuning"""
    correlation_window_seconds: float = 2.0
    history_limit: int = 10
    retrieval_top_k: int = 3
    regreet_after_hours: float = 12.0
    max_message_length: int = 1000
    chunk_size: int = 990
    chunk_delay_seconds: float = 1.5
    worker_threads: int = 8


@dataclass
class StorageConfig:
    """Local interaction store / knowledge index files"""
    data_dir: str = str(DATA_DIR)
    persist: bool = True

    @property
    def interactions_path(self) -> Path:
        return Path(self.data_dir).expanduser() / "interactions.jsonl"

    @property
    def knowledge_path(self) -> Path:
        return Path(self.data_dir).expanduser() / "knowledge.json"


@dataclass
class TenantConfig:
    """A business whose Instagram page is served by this deployment"""
    tenant_id: str
    page_id: str
    name: str = ""
    access_token: str = ""
    system_prompt: str = ""
    file_search_store: str = ""


@dataclass
class ParleyConfig:
    """Main Parley configuration"""
    server: ServerConfig = field(default_factory=ServerConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    tenants: List[TenantConfig] = field(default_factory=list)


def _parse_server_config(data: dict) -> ServerConfig:
    """Parse server section from config dict"""
    server_data = data.get("server", {})
    return ServerConfig(
        port=server_data.get("port", 8080),
        verify_token=server_data.get("verify_token", ""),
        app_secret=server_data.get("app_secret", ""),
        graph_api_url=server_data.get("graph_api_url", "https://graph.facebook.com/v21.0"),
        log_level=server_data.get("log_level", "INFO"),
    )


def _parse_embedding_config(data: dict) -> EmbeddingConfig:
    """Parse embedding section from config dict"""
    embedding_data = data.get("embedding", {})
    return EmbeddingConfig(
        provider=embedding_data.get("provider", "google"),
        model=embedding_data.get("model", "gemini-embedding-001"),
        dimensions=embedding_data.get("dimensions", 3072),
        google_api_key=embedding_data.get("google_api_key", ""),
        openai_api_key=embedding_data.get("openai_api_key", ""),
    )


def _parse_llm_config(data: dict) -> LLMConfig:
    """Parse llm section from config dict"""
    llm_data = data.get("llm", {})
    return LLMConfig(
        provider=llm_data.get("provider", "google"),
        model=llm_data.get("model", "gemini-2.5-flash"),
        anthropic_api_key=llm_data.get("anthropic_api_key", ""),
        openai_api_key=llm_data.get("openai_api_key", ""),
        google_api_key=llm_data.get("google_api_key", ""),
        max_tokens=llm_data.get("max_tokens", 1024),
        timeout=llm_data.get("timeout", 60.0),
    )


def _parse_orchestrator_config(data: dict) -> OrchestratorConfig:
    """Parse orchestrator section from config dict"""
    orch_data = data.get("orchestrator", {})
    defaults = OrchestratorConfig()
    return OrchestratorConfig(
        correlation_window_seconds=orch_data.get("correlation_window_seconds", defaults.correlation_window_seconds),
        history_limit=orch_data.get("history_limit", defaults.history_limit),
        retrieval_top_k=orch_data.get("retrieval_top_k", defaults.retrieval_top_k),
        regreet_after_hours=orch_data.get("regreet_after_hours", defaults.regreet_after_hours),
        max_message_length=orch_data.get("max_message_length", defaults.max_message_length),
        chunk_size=orch_data.get("chunk_size", defaults.chunk_size),
        chunk_delay_seconds=orch_data.get("chunk_delay_seconds", defaults.chunk_delay_seconds),
        worker_threads=orch_data.get("worker_threads", defaults.worker_threads),
    )


def _parse_storage_config(data: dict) -> StorageConfig:
    """Parse storage section from config dict"""
    storage_data = data.get("storage", {})
    return StorageConfig(
        data_dir=storage_data.get("data_dir", str(DATA_DIR)),
        persist=storage_data.get("persist", True),
    )


def _parse_tenants(data: dict) -> List[TenantConfig]:
    """Parse tenants list; entries without tenant_id or page_id are skipped"""
    tenants = []
    for item in data.get("tenants", []):
        tenant_id = item.get("tenant_id")
        page_id = item.get("page_id")
        if not tenant_id or not page_id:
            logger.warning("Skipping tenant entry without tenant_id/page_id: %s", item.get("name", "?"))
            continue
        tenants.append(TenantConfig(
            tenant_id=str(tenant_id),
            page_id=str(page_id),
            name=item.get("name", ""),
            access_token=item.get("access_token", ""),
            system_prompt=item.get("system_prompt", ""),
            file_search_store=item.get("file_search_store", ""),
        ))
    return tenants


def load_config() -> ParleyConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.parley/config.json)
    3. Default values
    """
    config = ParleyConfig()

    # Load from config file if exists
    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.server = _parse_server_config(data)
            config.embedding = _parse_embedding_config(data)
            config.llm = _parse_llm_config(data)
            config.orchestrator = _parse_orchestrator_config(data)
            config.storage = _parse_storage_config(data)
            config.tenants = _parse_tenants(data)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Failed to load config file: %s", e)

    # Environment variable overrides
    if os.getenv("PARLEY_PORT"):
        config.server.port = int(os.getenv("PARLEY_PORT"))
    if os.getenv("INSTAGRAM_VERIFY_TOKEN"):
        config.server.verify_token = os.getenv("INSTAGRAM_VERIFY_TOKEN")
    if os.getenv("INSTAGRAM_APP_SECRET"):
        config.server.app_secret = os.getenv("INSTAGRAM_APP_SECRET")
    if os.getenv("GRAPH_API_URL"):
        config.server.graph_api_url = os.getenv("GRAPH_API_URL")
    if os.getenv("PARLEY_LOG_LEVEL"):
        config.server.log_level = os.getenv("PARLEY_LOG_LEVEL")

    if os.getenv("EMBEDDING_PROVIDER"):
        config.embedding.provider = os.getenv("EMBEDDING_PROVIDER")
    if os.getenv("EMBEDDING_MODEL"):
        config.embedding.model = os.getenv("EMBEDDING_MODEL")

    if os.getenv("PARLEY_LLM_PROVIDER"):
        config.llm.provider = os.getenv("PARLEY_LLM_PROVIDER")
    if os.getenv("PARLEY_LLM_MODEL"):
        config.llm.model = os.getenv("PARLEY_LLM_MODEL")

    # API keys are shared between the embedding and completion sections
    google_key = os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY")
    if google_key:
        config.llm.google_api_key = google_key
        config.embedding.google_api_key = google_key
    if os.getenv("OPENAI_API_KEY"):
        config.llm.openai_api_key = os.getenv("OPENAI_API_KEY")
        config.embedding.openai_api_key = os.getenv("OPENAI_API_KEY")
    if os.getenv("ANTHROPIC_API_KEY"):
        config.llm.anthropic_api_key = os.getenv("ANTHROPIC_API_KEY")

    if os.getenv("PARLEY_CORRELATION_WINDOW"):
        config.orchestrator.correlation_window_seconds = float(os.getenv("PARLEY_CORRELATION_WINDOW"))
    if os.getenv("PARLEY_WORKER_THREADS"):
        config.orchestrator.worker_threads = int(os.getenv("PARLEY_WORKER_THREADS"))

    if os.getenv("PARLEY_DATA_DIR"):
        config.storage.data_dir = os.getenv("PARLEY_DATA_DIR")

    return config


def ensure_directories(config: ParleyConfig) -> None:
    """Ensure the data directory exists when local files are persisted"""
    if config.storage.persist:
        Path(config.storage.data_dir).expanduser().mkdir(parents=True, exist_ok=True)
