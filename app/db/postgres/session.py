from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.config import settings
from app.db.postgres.persistence import SqlRevisionStore, init_schema

DATABASE_URL = settings.database_url  # DB-URL aus den App-Settings

# erstellt die Engine für SQLAlchemy
engine = create_engine(DATABASE_URL, future=True, echo=False, pool_pre_ping=True)

# Session-Factory; der Store öffnet pro Operation eine eigene Session
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@lru_cache(maxsize=1)
def get_sql_store() -> SqlRevisionStore:
    # Tabellen beim ersten Zugriff anlegen
    init_schema(engine)
    return SqlRevisionStore(SessionLocal)
