"""Configuration for FastAPI application"""
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # API Settings
    API_TITLE: str = "Behavior Radar API"
    API_VERSION: str = "1.0.0"
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8080
    
    # CORS
    CORS_ORIGINS: list[str] = [
        "http://localhost:5000",
        "http://0.0.0.0:5000",
    ]
    
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",  # Core settings share the same .env
    )


settings = Settings()
