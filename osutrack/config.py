"""Application configuration and environment settings"""
from typing import Optional
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class DatabaseSettings(BaseModel):
    """Database connection settings"""
    host: str = Field(..., description="Database host")
    port: str = Field(..., description="Database port")
    name: str = Field(..., description="Database name")
    user: str = Field(..., description="Database user")
    password: str = Field(..., description="Database password")
    ssl_mode: str = Field(..., description="SSL mode passed to the driver")

class Settings(BaseSettings):
    """Application settings loaded from environment variables"""
    # Full SQLAlchemy URL, takes precedence over the DB_* credentials
    DATABASE_URL: Optional[str] = Field(None, description="SQLAlchemy database URL")

    DB_HOST: str = Field("localhost", description="Database host")
    DB_PORT: str = Field("5432", description="Database port")
    DB_NAME: str = Field("osutrack", description="Database name")
    DB_USER: str = Field("osutrack", description="Database user")
    DB_PASSWORD: str = Field("", description="Database password")
    DB_SSL_MODE: str = Field("disable", description="Database SSL mode")

    # osu! API
    OSU_API_KEY: Optional[str] = Field(None, description="osu! API v1 key")
    OSU_API_URL: str = Field("https://osu.ppy.sh/api", description="osu! API base URL")
    HISCORE_FETCH_COUNT: int = Field(100, description="Number of best scores fetched per update")

    # Engine tuning
    FLOAT_EPSILON: float = Field(1e-4, description="Tolerance for float field comparisons")
    INGEST_MAX_RETRIES: int = Field(3, description="Retries on concurrent append conflicts")
    QUERY_TIMEOUT_SECONDS: Optional[float] = Field(None, description="Default delta query timeout")

    LOG_LEVEL: str = Field("INFO", description="Logging level for the CLI")

    @property
    def database_settings(self) -> DatabaseSettings:
        """Get database credentials as a separate model"""
        return DatabaseSettings(
            host=self.DB_HOST,
            port=self.DB_PORT,
            name=self.DB_NAME,
            user=self.DB_USER,
            password=self.DB_PASSWORD,
            ssl_mode=self.DB_SSL_MODE
        )

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        extra='ignore'
    )

settings = Settings()
