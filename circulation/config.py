import os
import tempfile
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # Veritabanı Ayarları
    # Öncelik: LIBRARY_DB_FILE, yoksa işlem başına geçici dosya
    db_file: str = os.getenv(
        "LIBRARY_DB_FILE",
        os.path.join(tempfile.gettempdir(), f"circulation_{os.getpid()}.db"),
    )
    db_busy_timeout: float = float(os.getenv("LIBRARY_DB_BUSY_TIMEOUT", "5"))

    # Oturum Ayarları
    snapshot_file: str = os.getenv(
        "LIBRARY_SNAPSHOT_FILE",
        os.path.join(os.path.expanduser("~"), ".circulation", "storage.json"),
    )
    snapshot_key: str = os.getenv("LIBRARY_SNAPSHOT_KEY", "auth-storage")
    auth_redirect_url: str = os.getenv("AUTH_REDIRECT_URL", "http://localhost:5173")
    auth_token_ttl_minutes: int = int(os.getenv("AUTH_TOKEN_TTL_MINUTES", "60"))

    # Sorgu Önbelleği Ayarları (saniye)
    query_stale_time: float = float(os.getenv("QUERY_STALE_TIME", "300"))  # 5 dakika
    query_gc_time: float = float(os.getenv("QUERY_GC_TIME", "600"))  # 10 dakika
    query_retry: int = int(os.getenv("QUERY_RETRY", "3"))
    query_retry_backoff: float = float(os.getenv("QUERY_RETRY_BACKOFF", "1.0"))
    query_retry_max_delay: float = float(os.getenv("QUERY_RETRY_MAX_DELAY", "30"))
    query_network_mode: str = os.getenv("QUERY_NETWORK_MODE", "offlineFirst")

    # Sayfalama Ayarları
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    featured_count: int = int(os.getenv("LOAN_FEATURED_COUNT", "5"))

    # HTTP Ayarları
    http_timeout: float = float(os.getenv("HTTP_TIMEOUT", "10"))
    http_retries: int = int(os.getenv("HTTP_RETRIES", "3"))

    # E-posta Ayarları (EmailJS)
    email_api_url: str = os.getenv("EMAILJS_API_URL", "https://api.emailjs.com/api/v1.0/email/send")
    emailjs_service_id: Optional[str] = os.getenv("EMAILJS_SERVICE_ID")
    emailjs_public_key: Optional[str] = os.getenv("EMAILJS_PUBLIC_KEY")
    emailjs_template_student: Optional[str] = os.getenv("EMAILJS_TEMPLATE_STUDENT")
    emailjs_template_admin: Optional[str] = os.getenv("EMAILJS_TEMPLATE_ADMIN")
    email_timezone: str = os.getenv("EMAIL_TIMEZONE", "America/Guayaquil")

    # Özellik Bayrakları
    enable_email_notifications: bool = _flag("ENABLE_EMAIL_NOTIFICATIONS", "False")

    # Uygulama Ayarları
    app_name: str = os.getenv("APP_NAME", "Kütüphane Dolaşım Sistemi")
    debug: bool = _flag("DEBUG", "False")


settings = Settings()
