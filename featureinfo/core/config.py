from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Location of the JSON document listing the per-class query files
    FIA_CONFIG_FILE: Optional[str] = None

    # Graph store (Blazegraph) service root, namespaces are listed beneath it
    BLAZEGRAPH_URL: str = "http://localhost:9999/blazegraph"
    BLAZEGRAPH_USER: Optional[str] = None
    BLAZEGRAPH_PASSWORD: Optional[str] = None
    ROOT_NAMESPACE: str = "kb"

    # Virtual mapping (Ontop) endpoint of the stack
    ONTOP_URL: Optional[str] = None
    ONTOP_DISCOVERY_QUERY_FILE: Optional[str] = None

    # Relational time-series store, the database name comes from the config document
    POSTGRES_HOST: Optional[str] = None
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: Optional[str] = None
    POSTGRES_PASSWORD: Optional[str] = None
    POSTGRES_DRIVER: str = "postgresql+asyncpg"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 5

    # Seconds allowed for one endpoint query and for a whole request
    QUERY_TIMEOUT: float = 10.0
    REQUEST_TIMEOUT: float = 60.0

    DEFAULT_HOURS: int = 24
    LOG_LEVEL: str = "INFO"

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Create a single instance of the settings to use everywhere
settings = Settings()
