from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import get_settings


class Base(DeclarativeBase):
    """Base ORM per tutti i modelli."""
    pass


def make_engine(url: str, echo: bool = False) -> Engine:
    """
    Crea l'engine SQLAlchemy.

    Con SQLite ogni transazione parte con BEGIN IMMEDIATE: il lock di scrittura
    viene preso subito, quindi le sequenze "verifica poi scrivi" di worker
    concorrenti vengono serializzate dal DB (come un lock di riga su Postgres).

    Su altri DB l'unico vincolo sugli appuntamenti è l'indice unico (medico, inizio):
    due prenotazioni concorrenti che si sovrappongono con inizi diversi (10:00 e 10:15)
    non vengono bloccate dal DB.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, future=True, pool_pre_ping=True)

    engine = create_engine(
        url,
        echo=echo,               # metti True se vuoi vedere le query
        future=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        # il driver non deve aprire transazioni per conto suo
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_session_factory(bind: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=bind,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )


engine = make_engine(get_settings().database_url)
SessionLocal = make_session_factory(engine)


def init_db(bind: Engine | None = None) -> None:
    """Crea le tabelle se non esistono."""
    from . import models  # noqa: F401  registra i modelli nel metadata

    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def db_session(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    """
    Context manager per gestire correttamente la sessione:
    - commit se tutto ok
    - rollback su eccezioni
    - close sempre
    """
    session: Session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
