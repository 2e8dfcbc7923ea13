from collections.abc import Generator

from fastapi import Depends
from sqlalchemy.orm import Session, sessionmaker

from automail.db.session import SessionLocal
from automail.services.dispatcher import Dispatcher, build_dispatcher


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_dispatcher(
    session_factory: sessionmaker = Depends(get_session_factory),
) -> Generator[Dispatcher, None, None]:
    dispatcher = build_dispatcher(session_factory)
    try:
        yield dispatcher
    finally:
        dispatcher.close()
