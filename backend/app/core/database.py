from sqlalchemy import create_engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from app.core.settings import settings

SQLALCHEMY_DATABASE_URL = settings.database_url


def build_connect_args(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": 30}
    connect_args: dict = {}
    try:
        url = make_url(database_url)
        if (url.drivername or "").startswith("postgresql"):
            import socket

            host = url.host
            port = int(url.port or 5432)
            connect_args = {"sslmode": "require"}
            if host:
                # The hosted pooler only resolves reliably over IPv4.
                infos = socket.getaddrinfo(host, port, family=socket.AF_INET, type=socket.SOCK_STREAM)
                if infos:
                    ipv4 = infos[0][4][0]
                    if ipv4:
                        connect_args["hostaddr"] = ipv4
    except Exception:
        connect_args = {}
    return connect_args


engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args=build_connect_args(SQLALCHEMY_DATABASE_URL),
    pool_pre_ping=True,
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
