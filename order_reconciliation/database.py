from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
import os

# Orders live in the storefront's database; the job's own tables sit next to them.
# Default is a local sqlite file for development.
SQLALCHEMY_DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./reconciliation.db")

engine = create_engine(SQLALCHEMY_DATABASE_URL, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

class Base(DeclarativeBase):
	pass

def init_db(bind=None) -> None:
	"""Create the job-owned tables (and `orders` when it does not exist yet)."""
	from order_reconciliation.models import db as _models  # noqa: F401  registers the mappers
	Base.metadata.create_all(bind=bind or engine)
