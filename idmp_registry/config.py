import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./idmp_registry.db")
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    # Nesting limit for recursive components (packaging in packaging, ...)
    MAX_COMPOSITE_DEPTH: int = int(os.getenv("MAX_COMPOSITE_DEPTH", "2"))
    DEFAULT_PAGE_SIZE: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    RESOURCE_ROOT: str = os.getenv("RESOURCE_ROOT", "/IDMP")
    META_SOURCE: str = os.getenv("META_SOURCE", "#idmp-registry")


settings = Settings()
