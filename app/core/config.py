from pydantic_settings import BaseSettings
from typing import List
import os


class Settings(BaseSettings):
    # App Configuration
    APP_NAME: str = "TutorHub API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # CORS
    ALLOWED_HOSTS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Public URL of the web frontend, used in emails and checkout redirects
    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:3000")

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./tutorhub.db")

    # Authentication (tokens are issued by the identity provider)
    SECRET_KEY: str = os.getenv("SECRET_KEY", "your-secret-key-here")
    ALGORITHM: str = "HS256"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_CURRENCY: str = "usd"
    STRIPE_TIMEOUT_SECONDS: int = 20
    STRIPE_MAX_NETWORK_RETRIES: int = 2

    # Pricing
    PLATFORM_FEE_PERCENTAGE: int = 5
    MIN_SESSION_MINUTES: int = 30
    MAX_SESSION_MINUTES: int = 240

    # Email (Resend)
    RESEND_API_KEY: str = ""
    FROM_EMAIL: str = "TutorHub <noreply@tutorhub.com>"

    # Redis (shared rate-limit counters)
    REDIS_URL: str = ""
    RATE_LIMIT_ENABLED: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True


# Create settings instance
settings = Settings()

# Update allowed hosts for production
if os.getenv("ENVIRONMENT") == "production":
    settings.ALLOWED_HOSTS.append(settings.FRONTEND_URL)
