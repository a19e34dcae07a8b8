import os


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    """Environment-driven settings for the API.

    Business rules (bands, triggers, routing) live in config/kpi_config.yaml;
    only deployment concerns are read from the environment here.
    """

    PROJECT_NAME = os.getenv("PROJECT_NAME", "FE KPI Compliance API")
    API_V1_STR = "/api/v1"
    APP_VERSION = os.getenv("APP_VERSION", "0.1.0")
    BACKEND_CORS_ORIGINS = [
        origin.strip()
        for origin in os.getenv("BACKEND_CORS_ORIGINS", "http://localhost:5173").split(",")
        if origin.strip()
    ]

    # --- Logging & Monitoring ---
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_BUFFER_CAPACITY = int(os.getenv("LOG_BUFFER_CAPACITY", "1000"))

    # --- Rule configuration ---
    KPI_CONFIG_PATH = os.getenv("KPI_CONFIG_PATH", "")
    EMAIL_TEMPLATES_PATH = os.getenv("EMAIL_TEMPLATES_PATH", "")

    # --- Automation ---
    AUTOMATION_ENABLED = _env_bool("AUTOMATION_ENABLED", "true")
    AUTOMATION_INTERVAL_SECONDS = int(os.getenv("AUTOMATION_INTERVAL_SECONDS", "1800"))

    # --- Email delivery ---
    MAIL_TRANSPORT = os.getenv("MAIL_TRANSPORT", "console").strip().lower()
    MAIL_FROM_NAME = os.getenv("MAIL_FROM_NAME", "KPI Compliance")
    MAIL_FROM_EMAIL = os.getenv("MAIL_FROM_EMAIL", "no-reply@example.com")
    SMTP_HOST = os.getenv("SMTP_HOST", "localhost")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USER = os.getenv("SMTP_USER", "")
    SMTP_PASS = os.getenv("SMTP_PASS", "")
    MAIL_RELAY_URL = os.getenv("MAIL_RELAY_URL", "")
    MAIL_RELAY_TOKEN = os.getenv("MAIL_RELAY_TOKEN", "")
    EMAIL_MAX_RETRIES = int(os.getenv("EMAIL_MAX_RETRIES", "3"))

    # --- Google Sheets import ---
    GOOGLE_SERVICE_ACCOUNT_JSON = os.getenv("GOOGLE_SERVICE_ACCOUNT_JSON", "")
    GOOGLE_SERVICE_ACCOUNT_FILE = os.getenv("GOOGLE_SERVICE_ACCOUNT_FILE", "")
    KPI_SHEET_ID = os.getenv("KPI_SHEET_ID", "")
    KPI_WORKSHEET = os.getenv("KPI_WORKSHEET", "KPI")
