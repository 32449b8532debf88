from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DEBUG: bool = False
    ENVIRONMENT: str = "DEV"
    API_VERSION: str = "0.1.0"
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Security settings
    MAX_REQUEST_SIZE: int = 1 * 1024 * 1024  # 1MB
    MAX_WEBHOOK_PAYLOAD_SIZE: int = 1024 * 1024  # 1MB

    def validate_prod(self) -> None:
        """Sanity checks for production environment."""
        if self.ENVIRONMENT.upper() == "PROD":
            # Secrets are checked in their own settings
            if not self.CORS_ORIGINS:
                raise ValueError("CORS_ORIGINS must be set in production")
