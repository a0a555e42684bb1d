"""
=============================================================================
DATABASE.PY — Configuración de la Base de Datos
=============================================================================
Conexión a la base de datos de TimeWallet.

En DESARROLLO: SQLite (archivo timewallet.db)
En PRODUCCIÓN: PostgreSQL (variable de entorno DATABASE_URL)
En TESTS:      SQLite en memoria ("sqlite://"), una sola conexión compartida
"""

import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

# ─────────────────────────────────────────────────────────────────────────────
# CONEXIÓN
# ─────────────────────────────────────────────────────────────────────────────

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./timewallet.db")

# Los proveedores dan "postgres://" pero usamos psycopg (v3) como driver
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql+psycopg://", 1)
elif DATABASE_URL.startswith("postgresql://"):
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+psycopg://", 1)

# ─────────────────────────────────────────────────────────────────────────────
# ENGINE
# ─────────────────────────────────────────────────────────────────────────────
# check_same_thread=False → FastAPI ejecuta los endpoints síncronos en hilos.
# StaticPool → con SQLite en memoria cada conexión nueva sería una BD vacía,
# así que todas las sesiones comparten la misma conexión.

engine_args = {}
if DATABASE_URL.startswith("sqlite"):
    engine_args["connect_args"] = {"check_same_thread": False}
    if DATABASE_URL in ("sqlite://", "sqlite:///:memory:"):
        engine_args["poolclass"] = StaticPool

engine = create_engine(DATABASE_URL, echo=False, **engine_args)

# ─────────────────────────────────────────────────────────────────────────────
# SESSION
# ─────────────────────────────────────────────────────────────────────────────
# expire_on_commit=False → las filas devueltas por un endpoint siguen legibles
# después del commit (se serializan con Pydantic tras confirmar).

SessionLocal = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
)

Base = declarative_base()


def get_db():
    """
    Dependencia de FastAPI: abre una sesión por petición y la cierra al final.

      @app.get("/algo")
      def mi_endpoint(db: Session = Depends(get_db)):
          ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Crea todas las tablas si no existen (se llama al arrancar)."""
    # Importar los modelos registra sus tablas en Base.metadata
    import models  # noqa: F401
    Base.metadata.create_all(bind=engine)
