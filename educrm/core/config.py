from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    database_url: str = Field(..., alias="DATABASE_URL")

    jwt_secret_key: str = Field(..., alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field("HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(60, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_format: str = Field("text", alias="LOG_FORMAT")  # text | json

    # Ledger
    receipt_number_attempts: int = Field(5, alias="RECEIPT_NUMBER_ATTEMPTS")
    overdue_after_days: int = Field(30, alias="OVERDUE_AFTER_DAYS")

    # SMS gateway (Eskiz-compatible: /auth/login + /message/sms/send)
    sms_api_url: str = Field("https://notify.eskiz.uz/api", alias="SMS_API_URL")
    sms_email: Optional[str] = Field(None, alias="SMS_EMAIL")
    sms_password: Optional[str] = Field(None, alias="SMS_PASSWORD")
    sms_sender: str = Field("4546", alias="SMS_SENDER")
    sms_token_ttl_seconds: int = Field(29 * 24 * 3600, alias="SMS_TOKEN_TTL_SECONDS")
    sms_timeout_seconds: float = Field(10.0, alias="SMS_TIMEOUT_SECONDS")

    # Outgoing mail
    smtp_host: Optional[str] = Field(None, alias="SMTP_HOST")
    smtp_port: int = Field(587, alias="SMTP_PORT")
    smtp_user: Optional[str] = Field(None, alias="SMTP_USER")
    smtp_password: Optional[str] = Field(None, alias="SMTP_PASSWORD")
    email_from: str = Field("EduCRM <noreply@educrm.uz>", alias="EMAIL_FROM")

    seed_admin_email: Optional[str] = Field(None, alias="SEED_ADMIN_EMAIL")
    seed_admin_password: Optional[str] = Field(None, alias="SEED_ADMIN_PASSWORD")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
