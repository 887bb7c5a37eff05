from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Security
    KTRA_ADMIN_ID: str = "admin"
    KTRA_ADMIN_PASSWORD: str = "change-me"
    KTRA_SECRET_KEY: str = "dev-secret-change-me"
    KTRA_SECURE_COOKIES: bool = False

    # Sessions
    KTRA_BUYER_SESSION_HOURS: int = 24
    KTRA_ADMIN_SESSION_HOURS: int = 8

    # Database
    KTRA_DB_URL: str = "sqlite:///./data/ktra.db"

    # Registration form
    # 8-digit YYYYMMDD only; set False to also accept legacy 6-digit YYMMDD
    KTRA_REQUIRE_FULL_BIRTH_DATE: bool = True

    # Admin listing
    KTRA_PAGE_SIZE: int = 20

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
