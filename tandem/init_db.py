from sqlmodel import create_engine, SQLModel
from . import config, models  # noqa: F401  registers the tables
from .logging_utils import get_logger

logger = get_logger("tandem.init_db")


def init_db(path=config.DATABASE_URL):
    engine = create_engine(path, connect_args={"check_same_thread": False} if path.startswith("sqlite") else {})
    SQLModel.metadata.create_all(engine)
    logger.info("db_initialized", extra={"path": path})
    return engine


if __name__ == '__main__':
    init_db()
