from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from readalong.config import DATA_DIR, DATABASE_ECHO, DATABASE_URL, DB_LOCK_TIMEOUT_S
from readalong.schemas import *


def make_engine(url: str = DATABASE_URL, echo: bool = DATABASE_ECHO) -> Engine:
    if url.startswith('sqlite'):
        DATA_DIR.mkdir(parents=True, exist_ok=True)
        return create_engine(
            url,
            echo=echo,
            connect_args={'check_same_thread': False, 'timeout': DB_LOCK_TIMEOUT_S},
        )
    if url.startswith('postgresql'):
        return create_engine(
            url,
            echo=echo,
            pool_pre_ping=True,
            connect_args={'options': f'-c lock_timeout={int(DB_LOCK_TIMEOUT_S * 1000)}'},
        )
    return create_engine(url, echo=echo, pool_pre_ping=True)


engine = make_engine()

def init_db(bind: Engine = engine):
    SQLModel.metadata.create_all(bind)

def get_session():
    with Session(engine) as session:
        yield session
