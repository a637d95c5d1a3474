#Description: SQLAlchemy engine/session factory and DB initializer.
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

def create_session_factory(database_url: str):
    connect_args = {}
    if database_url.startswith("sqlite"):
        # feed threads, the order lane and timer threads share the engine
        connect_args["check_same_thread"] = False
    engine = create_engine(database_url, echo=False, future=True, pool_pre_ping=True, connect_args=connect_args)
    # snapshots are read after commit, outside the session
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, factory

def init_db(engine):
    from models.orm import Base
    Base.metadata.create_all(bind=engine)
