# File: control-plane/api/database.py
"""SQLite engine and session factory for the cluster object store."""

import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from config import DB_PATH

from .models import Base


def make_session_factory(db_path: str = DB_PATH):
    if not db_path.startswith(":memory:"):
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


SessionLocal = make_session_factory(DB_PATH)
