from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    secret_key: str = "dev-secret"
    database_url: str = "sqlite:///./ptbook.db"
    cookie_secure: bool = False
    log_level: str = "INFO"

    bootstrap_admin_email: str = "admin@ptbook.local"
    bootstrap_admin_password: str = "admin12345"

    day_start: str = "06:00"
    day_end: str = "22:00"
    slot_minutes: int = 30
    booking_lead_minutes: int = 60
    staff_cancel_lead_minutes: int = 120

    point_validity_months: int = 6
    expiring_warning_days: int = 14
    min_password_length: int = 9

    # Off reproduces the unguarded check-then-insert booking path.
    enforce_slot_claims: bool = True


settings = Settings()
