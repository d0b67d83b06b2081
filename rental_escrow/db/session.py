from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from rental_escrow.settings import RENTAL_ESCROW_DB_URL


def build_engine(url: str):
    connect_args = {}
    if url.startswith("sqlite"):
        # Sessions are handed across the threadpool FastAPI runs sync routes in.
        connect_args["check_same_thread"] = False
    return create_engine(
        url,
        pool_pre_ping=True,
        future=True,
        connect_args=connect_args,
    )


def build_session_factory(engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


engine_rental = build_engine(RENTAL_ESCROW_DB_URL)

SessionLocalRental = build_session_factory(engine_rental)
