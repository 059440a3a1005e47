"""Database configuration and credentials management"""
from dataclasses import dataclass
from urllib.parse import quote_plus

from osutrack.config import Settings, settings

@dataclass
class DatabaseCredentials:
    """Database credentials container"""
    host: str
    port: str
    name: str
    user: str
    password: str
    ssl_mode: str = 'disable'

    def to_connection_string(self) -> str:
        """Generate database connection string with proper escaping"""
        return (
            f"postgresql://{quote_plus(self.user)}:{quote_plus(self.password)}@{self.host}:{self.port}/"
            f"{self.name}?sslmode={self.ssl_mode}"
        )

    @classmethod
    def from_settings(cls, config: Settings) -> 'DatabaseCredentials':
        """Create credentials from the DB_* settings"""
        db_settings = config.database_settings
        return cls(
            host=db_settings.host,
            port=db_settings.port,
            name=db_settings.name,
            user=db_settings.user,
            password=db_settings.password,
            ssl_mode=db_settings.ssl_mode
        )

class DatabaseManager:
    """Resolves the connection string for the snapshot database"""

    @staticmethod
    def get_connection_string(config: Settings) -> str:
        """
        Generate database connection string from settings

        Args:
            config: Loaded application settings

        Returns:
            DATABASE_URL when set, otherwise a URL built from the DB_* credentials
        """
        if config.DATABASE_URL:
            return config.DATABASE_URL
        credentials = DatabaseCredentials.from_settings(config)
        return credentials.to_connection_string()

    @classmethod
    def initialize_from_env(cls) -> str:
        """
        Initialize database connection from environment variables

        Returns:
            Database connection string

        Raises:
            ValueError: If neither DATABASE_URL nor DB_PASSWORD is configured
        """
        if not settings.DATABASE_URL and not settings.DB_PASSWORD:
            raise ValueError("DATABASE_URL or DB_PASSWORD setting is required")

        return cls.get_connection_string(settings)
