from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables or .env file."""

    jwt_secret: str = "dietcim-secret-key"
    jwt_algorithm: str = "HS256"
    token_expiry_hours: int = 24
    bcrypt_rounds: int = 10
    seed_articles: bool = True
    log_level: str = "INFO"
    cors_origins: list[str] = ["*"]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
