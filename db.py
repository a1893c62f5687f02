# db.py
import logging
import os
from contextlib import contextmanager

from dotenv import load_dotenv
from sqlmodel import SQLModel, create_engine, Session

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
if not DATABASE_URL:
  raise RuntimeError("DATABASE_URL is not set in backend .env")

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, echo=False, pool_pre_ping=True, connect_args=connect_args)

def init_db(bind=None) -> None:
  import models  # noqa: F401  registers the tables on SQLModel.metadata
  SQLModel.metadata.create_all(bind or engine)

def get_session():
  with Session(engine) as session:
    yield session

@contextmanager
def transaction(session: Session):
  """Commit on success; roll back and re-raise on any failure."""
  try:
    yield session
    session.commit()
  except Exception:
    logger.debug("rolling back transaction", exc_info=True)
    session.rollback()
    raise
