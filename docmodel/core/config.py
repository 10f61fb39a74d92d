from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    SECRET: str = ""
    SCHEME: str = "https"
    DOMAIN: str = "db.fauna.com"
    PORT: int = 443
    TIMEOUT: float = 60.0
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_HISTORY: int = 500

    # Read DOCMODEL_* variables from the environment or the .env file
    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="DOCMODEL_", extra="ignore"
    )

    @property
    def endpoint(self) -> str:
        return f"{self.SCHEME}://{self.DOMAIN}:{self.PORT}/"


# Create a single instance of the settings to use everywhere
settings = Settings()
