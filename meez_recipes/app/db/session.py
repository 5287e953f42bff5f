from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from meez_recipes.app.core.config import get_settings


def _engine_kwargs(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


def build_engine(database_url: str | None = None):
    url = database_url or get_settings().database_url
    return create_engine(url, future=True, **_engine_kwargs(url))


def build_session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)
