import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    port: int
    serverless: bool
    log_level: str

    upload_dir: str
    storage_backend: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getflag(name: str) -> bool:
    return _getenv(name).lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    serverless = _getflag("SERVERLESS") or bool(_getenv("VERCEL"))
    port_raw = _getenv("PORT", "3000")
    try:
        port = int(port_raw)
    except ValueError:
        port = 3000
    return Settings(
        secret_key=_getenv("SECRET_KEY") or _getenv("SESSION_SECRET", "change-me"),
        env=_getenv("ENV", "development").lower(),
        database_url=_getenv("DATABASE_URL", "sqlite:///elearn.db"),
        port=port,
        serverless=serverless,
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        # Serverless filesystems are read-only except /tmp.
        upload_dir=_getenv("UPLOAD_DIR", "/tmp/uploads" if serverless else "uploads"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "PORT": s.port,
        "SERVERLESS": s.serverless,
        "LOG_LEVEL": s.log_level,
        "UPLOAD_DIR": s.upload_dir,
        "STORAGE_BACKEND": s.storage_backend,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # submission attachments (10MB)
        "MAX_CONTENT_LENGTH": 10 * 1024 * 1024,
    }
