from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class AuthSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    JWT_SECRET: SecretStr = SecretStr("test-jwt-secret-key-for-testing-only")
    JWT_AUDIENCE: str = "authenticated"

    # Shared secret for internal callers (the playground execution service)
    LEDGER_SERVICE_KEY: SecretStr = SecretStr("test-ledger-service-key")
