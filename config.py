import os
from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_base_url: str = os.getenv("API_BASE_URL", "http://localhost:5001/api")
    api_timeout: float = float(os.getenv("API_TIMEOUT", "10"))
    api_connect_timeout: float = float(os.getenv("API_CONNECT_TIMEOUT", "5"))

    # Durable local storage (session, self-registered users, repair queue)
    local_store_file: str = os.getenv(
        "LIBRARY_STORE_FILE",
        str(Path.home() / ".biblioteca" / "store.db")
    )

    # Bootstrap operator account, usable even when the backend is down
    bootstrap_session: bool = _env_flag("LIBRARY_BOOTSTRAP_SESSION", "True")
    bootstrap_admin_id: str = os.getenv("BOOTSTRAP_ADMIN_ID", "admin-default-123")
    bootstrap_admin_name: str = os.getenv("BOOTSTRAP_ADMIN_NAME", "Administrador")
    bootstrap_admin_email: str = os.getenv("BOOTSTRAP_ADMIN_EMAIL", "admin@biblioteca.com")
    bootstrap_admin_password: str = os.getenv("BOOTSTRAP_ADMIN_PASSWORD", "admin123")

    # Loans and returns
    loan_repair_retries: int = int(os.getenv("LOAN_REPAIR_RETRIES", "1"))
    fine_per_day: float = float(os.getenv("FINE_PER_DAY", "0"))  # 0 leaves fines to the backend

    # Accounts
    min_password_length: int = int(os.getenv("MIN_PASSWORD_LENGTH", "6"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Biblioteca")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG", "False")
    log_level: str = os.getenv("LOG_LEVEL", "DEBUG" if _env_flag("DEBUG", "False") else "WARNING")


settings = Settings()
