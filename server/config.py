from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from os import environ
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

class Info(BaseModel):
    """Information about the API"""
    title: str = Field("Coach API", description="API title")
    description: str = Field("Streaming coaching chat backend", description="API description")
    version: str = Field("1.0.0", description="API version")
    root_path: str = Field("/", description="API root path")
    docs_url: Optional[str] = Field("/docs", description="API documentation URL")
    redoc_url: Optional[str] = Field("/redoc", description="ReDoc documentation URL")


class Neo4j(BaseModel):
    """Neo4j configuration"""
    URI: str = Field(environ.get("URI_NEO4J", ""), description="Neo4j URI")
    USER: str = Field(environ.get("USER_NEO4J", ""), description="Neo4j username")
    PASSWORD: str = Field(environ.get("PASSWORD_NEO4J", ""), description="Neo4j password")


class Persistence(BaseModel):
    """Persistence backend selection"""
    BACKEND: str = Field(environ.get("PERSISTENCE_BACKEND", "memory"), description="'memory' or 'neo4j'")


class ML(BaseModel):
    """Machine Learning configuration"""
    # Default chat backend, in format 'provider/model'
    LLM_SERVICE: str = Field(environ.get("LLM_SERVICE", "openai/gpt-4o-mini"), description="Default chat service 'provider/model'")
    EMBEDDING_SERVICE: str = Field(environ.get("EMBEDDING_SERVICE", "openai/text-embedding-3-small"), description="Embedding service 'provider/model'")
    MEMORY_DETECTION_SERVICE: str = Field(environ.get("MEMORY_DETECTION_SERVICE", "openai/gpt-4o-mini"), description="Memory classification service 'provider/model'")

    # OpenAI Configuration
    OPENAI_API_KEY: str = Field(environ.get("OPENAI_API_KEY", ""), description="OpenAI API key")
    OPENAI_CHAT_MODEL: str = Field(environ.get("OPENAI_CHAT_MODEL", "gpt-4o-mini"), description="OpenAI fast chat model")
    OPENAI_VISION_MODEL: str = Field(environ.get("OPENAI_VISION_MODEL", "gpt-4o"), description="OpenAI vision / advanced model")
    OPENAI_EMBEDDING_MODEL: str = Field(environ.get("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"), description="OpenAI embedding model")

    # Google Gemini Configuration
    GEMINI_API_KEY: str = Field(environ.get("GEMINI_API_KEY", ""), description="Google Gemini API key")
    GEMINI_CHAT_MODEL: str = Field(environ.get("GEMINI_CHAT_MODEL", "gemini-2.0-flash-exp"), description="Gemini fast chat model")
    GEMINI_VISION_MODEL: str = Field(environ.get("GEMINI_VISION_MODEL", "gemini-1.5-pro"), description="Gemini vision / advanced model")

    # Automatic selection prefers this provider when it is registered
    PREFERRED_PROVIDER: str = Field(environ.get("PREFERRED_PROVIDER", "gemini"), description="Preferred provider for automatic selection")


class Memory(BaseModel):
    """Memory retrieval and deduplication policy"""
    EMBEDDING_DIMENSIONS: int = Field(int(environ.get("MEMORY_EMBEDDING_DIMENSIONS", "1536")))
    DEFAULT_LIMIT: int = Field(int(environ.get("MEMORY_DEFAULT_LIMIT", "8")))

    # Composite rank = w_sim * similarity + w_imp * importance + w_rec * recency/frequency
    SIMILARITY_WEIGHT: float = Field(float(environ.get("MEMORY_SIMILARITY_WEIGHT", "0.6")))
    IMPORTANCE_WEIGHT: float = Field(float(environ.get("MEMORY_IMPORTANCE_WEIGHT", "0.25")))
    RECENCY_WEIGHT: float = Field(float(environ.get("MEMORY_RECENCY_WEIGHT", "0.15")))
    RECENCY_HALF_LIFE_DAYS: float = Field(float(environ.get("MEMORY_RECENCY_HALF_LIFE_DAYS", "14")))
    ACCESS_SATURATION: int = Field(int(environ.get("MEMORY_ACCESS_SATURATION", "20")), description="Access count at which the frequency term reaches 1.0")

    RELEVANCE_THRESHOLD: float = Field(float(environ.get("MEMORY_RELEVANCE_THRESHOLD", "0.7")), description="Similarity at or above which a returned memory is access-logged")

    # Dedup bands: >= SKIP -> merge into existing, >= REVIEW -> review, else insert
    DEDUP_SKIP_THRESHOLD: float = Field(float(environ.get("MEMORY_DEDUP_SKIP_THRESHOLD", "0.92")))
    DEDUP_REVIEW_THRESHOLD: float = Field(float(environ.get("MEMORY_DEDUP_REVIEW_THRESHOLD", "0.80")))
    IMPORTANCE_BOOST: float = Field(float(environ.get("MEMORY_IMPORTANCE_BOOST", "0.05")))

    # Extraction
    EXTRACTION_ENABLED: bool = Field(environ.get("MEMORY_EXTRACTION_ENABLED", "true").lower() in {"1", "true", "yes"})
    MIN_AUTO_IMPORTANCE: float = Field(float(environ.get("MEMORY_MIN_AUTO_IMPORTANCE", "0.5")))


class Chat(BaseModel):
    """Streaming turn configuration"""
    HISTORY_WINDOW: int = Field(int(environ.get("CHAT_HISTORY_WINDOW", "20")))
    BUSY_POLICY: str = Field(environ.get("CHAT_BUSY_POLICY", "reject"), description="'reject' or 'queue'")
    QUEUE_TIMEOUT_SECONDS: float = Field(float(environ.get("CHAT_QUEUE_TIMEOUT_SECONDS", "30")))
    PERSIST_RETRY_MIN_SECONDS: float = Field(float(environ.get("CHAT_PERSIST_RETRY_MIN_SECONDS", "0.5")))
    PERSIST_RETRY_MAX_SECONDS: float = Field(float(environ.get("CHAT_PERSIST_RETRY_MAX_SECONDS", "2")))
    TEMPERATURE: float = Field(float(environ.get("CHAT_TEMPERATURE", "0.7")))
    MAX_TOKENS: int = Field(int(environ.get("CHAT_MAX_TOKENS", "1024")))
    UPLOADS_DIR: str = Field(environ.get("CHAT_UPLOADS_DIR", "uploads"))
    SYSTEM_PROMPT: str = Field(
        environ.get(
            "CHAT_SYSTEM_PROMPT",
            "You are a holistic wellness coach. Be supportive, educational, and focus on sustainable lifestyle changes.",
        )
    )


class BaseConfig(BaseSettings):
    """
    Defines the application's configuration settings.
    Utilizes pydantic-settings to automatically read from environment variables
    or a .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="allow"
    )

    # General settings
    app_name: str = "Coach"
    INFO: Info = Info()
    NEO4J: Neo4j = Neo4j()
    PERSISTENCE: Persistence = Persistence()
    MACHINE_LEARNING: ML = ML()
    MEMORY: Memory = Memory()
    CHAT: Chat = Chat()

# Create a global config instance
config = BaseConfig()
