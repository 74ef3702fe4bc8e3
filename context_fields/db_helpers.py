# context_fields/db_helpers.py

import logging
import os
from typing import Callable, Optional

from google.auth import default as google_auth_default
from google.cloud import secretmanager
from google.oauth2 import service_account
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from context_fields.entities import Base

logger = logging.getLogger("context_fields.db")


def _build_creds():
    key_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
    scopes = ["https://www.googleapis.com/auth/cloud-platform"]
    if key_path and os.path.exists(key_path):
        return service_account.Credentials.from_service_account_file(key_path, scopes=scopes)
    creds, _ = google_auth_default(scopes=scopes)
    return creds


class DbSettings:
    """
    Connection settings read from the environment. DATABASE_URL wins when set;
    otherwise the URL is assembled from the DB_* variables, fetching the password
    from Secret Manager when only DB_SECRET_ID is configured.
    """

    def __init__(self) -> None:
        self.PROJECT_ID   = os.getenv("GOOGLE_CLOUD_PROJECT", "")
        self.DATABASE_URL = os.getenv("DATABASE_URL", "")
        self.DB_HOST      = os.getenv("DB_HOST", "localhost")
        self.DB_PORT      = int(os.getenv("DB_PORT", "5432"))
        self.DB_NAME      = os.getenv("DB_NAME", "")
        self.DB_USER      = os.getenv("DB_USER", "")
        self.DB_PASSWORD  = os.getenv("DB_PASSWORD", "")
        self.DB_SECRET_ID = os.getenv("DB_SECRET_ID", "")

    def get_db_password(self) -> str:
        if self.DB_PASSWORD:
            return self.DB_PASSWORD
        if self.DB_SECRET_ID:
            client = secretmanager.SecretManagerServiceClient(credentials=_build_creds())
            name = client.secret_version_path(self.PROJECT_ID, self.DB_SECRET_ID, "latest")
            resp = client.access_secret_version(request={"name": name})
            self.DB_PASSWORD = resp.payload.data.decode("utf-8")
            return self.DB_PASSWORD
        raise RuntimeError("No DB_PASSWORD and no Secret Manager configured")

    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        password = self.get_db_password()
        return f"postgresql+pg8000://{self.DB_USER}:{password}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"


def get_db_engine(settings: Optional[DbSettings] = None) -> Engine:
    settings = settings or DbSettings()
    url = settings.database_url()
    logger.info("[DB] Connecting to %s", url.split("@")[-1])
    if url.startswith("postgresql+pg8000"):
        # pg8000 supports 'timeout' in seconds
        return create_engine(url, pool_pre_ping=True, connect_args={"timeout": 10})
    return create_engine(url, pool_pre_ping=True)


def create_session_factory(engine: Engine, create_tables: bool = False) -> sessionmaker:
    if create_tables:
        Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


_session_factory: Optional[sessionmaker] = None


def get_session_factory() -> Callable[[], Session]:
    """Process-wide session factory, built on first use."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_db_engine())
    return _session_factory
