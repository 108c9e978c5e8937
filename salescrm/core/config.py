from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Sales CRM API"
    app_env: str = "local"
    app_debug: bool = True
    api_port: int = 8000
    database_url: str = "sqlite+pysqlite:///./salescrm.db"
    jwt_secret: str = "replace-me"
    jwt_algorithm: str = "HS256"
    upload_dir: str = "uploads"
    max_upload_bytes: int = 100 * 1024 * 1024
    allowed_upload_extensions: list[str] = [
        "pdf",
        "doc",
        "docx",
        "xls",
        "xlsx",
        "ppt",
        "pptx",
        "png",
        "jpg",
        "jpeg",
        "webp",
        "zip",
        "csv",
    ]
    create_tables_on_startup: bool = True
    metrics_enabled: bool = False
    otel_enabled: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
