"""
Application configuration using Pydantic Settings
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support"""
    
    # Local store
    DATABASE_URL: str = "sqlite+aiosqlite:///./migrations.db"
    
    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    
    # Environment
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    
    # Extraction
    PAGE_SIZE: int = 500
    PAGE_MAX_ATTEMPTS: int = 3
    PAGE_RETRY_DELAY: float = 1.0
    
    # Pipeline
    CHANNEL_CAPACITY: int = 200
    LOADER_CONCURRENCY: int = 4
    
    # Loading
    LOAD_MAX_ATTEMPTS: int = 3
    LOAD_RETRY_DELAY: float = 0.5
    
    # Environment API client
    HTTP_TIMEOUT: float = 30.0
    
    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
