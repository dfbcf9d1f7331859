from typing import List, Optional

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application Information
    app_name: str = Field(default="Enrollment & Payment Engine")
    app_description: str = Field(
        default="Paid, time-bounded, device-limited course access"
    )
    app_version: str = Field(default="1.0.0")
    debug: bool = Field(default=True)
    production: bool = Field(default=False)

    # Database Configuration
    db_host: str = Field(default="127.0.0.1")
    db_port: int = Field(default=5432)
    db_database: str = Field(default="enrollments")
    db_username: str = Field(default="home")
    db_password: str = Field(default="123")
    # Full URL override (e.g. sqlite:///./local.db); wins over the db_* fields
    database_url: Optional[str] = Field(default=None)

    # Security Settings
    cors_allowed_origins: List[str] = Field(default=["http://localhost:3000"])

    # JWT Configuration
    jwt_secret: str = Field(default="your-secret-key-change-in-production")
    jwt_algorithm: str = Field(default="HS256")
    jwt_access_expiration_minutes: int = Field(default=60 * 24)
    jwt_issuer: str = Field(default="Enrollment Engine")

    # Payment Gateway (Razorpay)
    razorpay_key_id: str = Field(default="")
    razorpay_key_secret: str = Field(default="")
    razorpay_webhook_secret: str = Field(default="")
    razorpay_api_base: str = Field(default="https://api.razorpay.com")
    payment_gateway_timeout_seconds: float = Field(default=10.0)
    payment_currency: str = Field(default="INR")

    # Revenue split
    guru_share_percentage: float = Field(default=80.0, ge=0, le=100)
    platform_share_percentage: float = Field(default=20.0, ge=0, le=100)

    # Device access
    default_device_limit: int = Field(default=3, ge=1, le=10)
    max_device_limit: int = Field(default=10, ge=1, le=10)

    # Risk assessment
    risk_high_amount_threshold: float = Field(default=10000.0)
    risk_home_country: str = Field(default="IN")
    risk_failed_attempts_window_hours: int = Field(default=24)
    risk_failed_attempts_threshold: int = Field(default=3)

    # Lifecycle
    stale_pending_minutes: int = Field(default=60)
    subscription_sweep_enabled: bool = Field(default=False)
    subscription_sweep_interval_minutes: int = Field(default=60)

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_storage_uri: str = Field(default="memory://")
    rate_limit_default: str = Field(default="100/minute")
    device_registration_rate_limit: str = Field(default="10/minute")
    enrollment_initiate_rate_limit: str = Field(default="20/minute")

    # Logging
    log_level: str = Field(default="info")
    log_file: str = Field(default="logs/app.log")

    # Pagination
    default_page_size: int = Field(default=20)
    max_page_size: int = Field(default=100)

    # ============================
    # Generic comma-separated parser
    # ============================
    @staticmethod
    def _parse_csv(value, default):
        if isinstance(value, str):
            items = [x.strip() for x in value.split(",") if x.strip()]
            return items if items else default
        if isinstance(value, list):
            return value
        return default

    @field_validator("cors_allowed_origins", mode="before")
    def validate_cors(cls, v):
        return cls._parse_csv(v, ["http://localhost:3000"])

    @field_validator("payment_currency", "risk_home_country", mode="before")
    def upper_codes(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @model_validator(mode="after")
    def validate_revenue_split(self):
        total = self.guru_share_percentage + self.platform_share_percentage
        if abs(total - 100) > 0.01:
            raise ValueError("Revenue share percentages must add up to 100")
        if self.default_device_limit > self.max_device_limit:
            raise ValueError("default_device_limit cannot exceed max_device_limit")
        return self

    @property
    def sqlalchemy_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return "postgresql+psycopg2://{user}:{password}@{host}:{port}/{database}".format(
            user=self.db_username,
            password=self.db_password,
            host=self.db_host,
            port=self.db_port,
            database=self.db_database,
        )

    @property
    def gateway_configured(self) -> bool:
        return bool(self.razorpay_key_id and self.razorpay_key_secret)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }


def load_settings():
    try:
        settings = Settings()
        print("✅ Settings loaded successfully!")
        return settings
    except ValidationError as e:
        print("❌ Validation Error:", e)
        raise


settings = load_settings()
