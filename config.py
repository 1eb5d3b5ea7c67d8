import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


class Settings(BaseModel):
    environment: str = "development"
    database_url: Optional[str] = None
    database_name: str = "rvvm"
    store_backend: str = "auto"  # auto | memory | mongo
    store_timeout_seconds: float = 10.0
    jwt_secret: str = "dev-secret"
    access_token_expire_minutes: int = 60 * 8
    timezone: str = "Asia/Kolkata"
    frontend_url: str = "http://localhost:3000"
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None
    admin_name: str = "Administrator"
    log_level: str = "INFO"
    port: int = 5000

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            environment=os.getenv("ENVIRONMENT", "development").strip(),
            database_url=os.getenv("DATABASE_URL", "").strip() or None,
            database_name=os.getenv("DATABASE_NAME", "rvvm").strip() or "rvvm",
            store_backend=os.getenv("STORE_BACKEND", "auto").strip().lower(),
            store_timeout_seconds=float(os.getenv("STORE_TIMEOUT_SECONDS", "10")),
            jwt_secret=os.getenv("JWT_SECRET", "dev-secret"),
            access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 8))),
            timezone=os.getenv("TIMEZONE", "Asia/Kolkata"),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
            admin_email=os.getenv("ADMIN_EMAIL") or None,
            admin_password=os.getenv("ADMIN_PASSWORD") or None,
            admin_name=os.getenv("ADMIN_NAME", "Administrator"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=int(os.getenv("PORT", "5000")),
        )
