from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_SECRET: Optional[str] = None
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 300
    DEBUG: bool = False

    # DATABASE_URL is injected by the platform in production (Postgres).
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./prepfox.db")

    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"
    FRONTEND_URL: str = "http://localhost:5173"

    # PrepFox-managed UPS account. Users may also connect their own UPS
    # account; those credentials live encrypted on carrier_configurations.
    UPS_CLIENT_ID: Optional[str] = None
    UPS_CLIENT_SECRET: Optional[str] = None
    UPS_ACCOUNT_NUMBER: Optional[str] = None
    UPS_ENVIRONMENT: str = "production"
    UPS_REDIRECT_URI: Optional[str] = None

    CANADA_POST_USERNAME: Optional[str] = None
    CANADA_POST_PASSWORD: Optional[str] = None
    CANADA_POST_CUSTOMER_NUMBER: Optional[str] = None
    CANADA_POST_ENVIRONMENT: str = "development"

    SHIPSTATION_API_KEY: Optional[str] = None
    SHIPSTATION_API_SECRET: Optional[str] = None

    # Markup applied on top of carrier rates for PrepFox-managed accounts.
    MANAGED_CARRIER_MARKUP_PERCENT: float = 15.0

    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # OpenAI is optional; when the key is missing the product optimizer
    # answers 503 instead of failing with a generic 500.
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_API_BASE_URL: str = os.getenv("OPENAI_API_BASE_URL", "https://api.openai.com")
    OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

    SHOPIFY_CLIENT_ID: Optional[str] = None
    SHOPIFY_CLIENT_SECRET: Optional[str] = None
    SHOPIFY_API_VERSION: str = "2023-10"
    SHOPIFY_SCOPES: str = "read_products,write_products,read_orders,write_orders"
    SHOPIFY_REDIRECT_URI: Optional[str] = None

    RESEND_API_KEY: Optional[str] = None
    EMAIL_FROM: str = "PrepFox <notifications@prepfox.com>"

    TOKEN_REFRESH_INTERVAL_SECONDS: int = 600
    # Background workers are off in SQLite dev mode unless forced on.
    RUN_BACKGROUND_WORKERS: Optional[bool] = None

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def secret_key(self) -> str:
        return self.JWT_SECRET or self.SECRET_KEY

    @property
    def ups_base_url(self) -> str:
        if self.UPS_ENVIRONMENT == "sandbox":
            return "https://wwwcie.ups.com"
        return "https://onlinetools.ups.com"

    @property
    def canada_post_base_url(self) -> str:
        if self.CANADA_POST_ENVIRONMENT == "production":
            return "https://soa-gw.canadapost.ca"
        return "https://ct.soa-gw.canadapost.ca"

    @property
    def shopify_configured(self) -> bool:
        return bool(self.SHOPIFY_CLIENT_ID and self.SHOPIFY_CLIENT_SECRET)


settings = Settings()
