from shared.database import Base, get_engine, get_session

from .config import DATABASE_URL

engine = get_engine(DATABASE_URL)
SessionLocal = get_session(engine)

__all__ = ["Base", "engine", "SessionLocal"]
