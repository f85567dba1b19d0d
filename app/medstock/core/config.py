from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    APP_NAME: str = "MEDSTOCK-TRANSFERS"
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    DATABASE_URL: str = "sqlite+pysqlite:///./medstock.db"
    METRICS_ENABLED: bool = True
    TRANSFER_CODE_PREFIX: str = "REQ"
    EXPIRING_SOON_DAYS: int = 90
    TRANSFER_LIST_MAX_PAGE_SIZE: int = 100
    OPS_ENABLE_INTEGRITY_SCAN: bool = True

settings = Settings()
