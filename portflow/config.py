"""
Configuration settings for the Workflow Engine.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""
    
    # Application
    APP_NAME: str = "PortFlow"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = True
    
    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    
    # Execution engine
    NODE_TIMEOUT_SECONDS: float = 30.0  # Per node, unless the plugin overrides it
    RETRY_BACKOFF_SECONDS: float = 0.5
    RETRY_BACKOFF_FACTOR: float = 2.0
    MAX_CONCURRENCY: int = 1  # Ready nodes allowed to run at the same time
    
    # Scripted plugins
    SCRIPT_MAX_LENGTH: int = 2000
    
    # Logging
    LOG_LEVEL: str = "INFO"
    
    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()
