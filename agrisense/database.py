from sqlmodel import Session, SQLModel, create_engine

from agrisense.config import DATABASE_URL

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, connect_args=connect_args)


def create_db_and_tables():
    # Import models so their tables are registered on the metadata
    from agrisense import models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_db():
    with Session(engine) as session:
        yield session
