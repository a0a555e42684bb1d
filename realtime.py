"""
=============================================================================
REALTIME.PY — Suscripción a Cambios
=============================================================================
Avisa a quien esté suscrito cuando cambia una fila de la BD.

¿Cómo funciona?
  1. SQLAlchemy ejecuta un flush → apuntamos las filas nuevas, modificadas
     y borradas en session.info
  2. Si la transacción hace COMMIT → se publican en el bus
  3. Si hace ROLLBACK → se descartan (nunca se avisa de algo que no pasó)

Los UPDATE masivos (query.update) no pasan por session.dirty, así que
quien los use debe llamar a record_change() con la fila afectada.

Uso:
  unsubscribe = change_bus.subscribe("goals", {"user_id": 3}, callback)
  ...
  unsubscribe()

Cada cambio llega como:
  {"table": "goals", "event": "UPDATE", "record": {...columnas...}}
"""

import logging
import threading
from typing import Callable, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy import event, inspect as sa_inspect
from sqlalchemy.orm import Session

logger = logging.getLogger("timewallet.realtime")

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"

_PENDING_KEY = "timewallet_pending_changes"


# =============================================================================
# ===================== BUS DE CAMBIOS ========================================
# =============================================================================

class ChangeBus:
    """Registro de suscriptores (tabla, filtro, callback), seguro entre hilos"""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers = {}
        self._next_id = 0

    def subscribe(self, table: str, filter: Optional[dict], callback: Callable[[dict], None]) -> Callable[[], None]:
        """
        Registra un callback para los cambios de `table` cuyas columnas
        coinciden con `filter` (None = todas las filas).
        Retorna la función para darse de baja.
        """
        with self._lock:
            sub_id = self._next_id
            self._next_id += 1
            self._subscribers[sub_id] = (table, dict(filter or {}), callback)

        def unsubscribe():
            with self._lock:
                self._subscribers.pop(sub_id, None)

        return unsubscribe

    def subscriber_count(self, table: Optional[str] = None) -> int:
        with self._lock:
            if table is None:
                return len(self._subscribers)
            return sum(1 for t, _, _ in self._subscribers.values() if t == table)

    def publish(self, change: dict) -> int:
        """Entrega el cambio a los suscriptores que encajan. Retorna cuántos"""
        with self._lock:
            targets = list(self._subscribers.values())

        record = change.get("record") or {}
        delivered = 0
        for table, match, callback in targets:
            if table != change.get("table"):
                continue
            if any(record.get(key) != value for key, value in match.items()):
                continue
            try:
                callback(change)
                delivered += 1
            except Exception as e:
                # Un suscriptor roto no corta la entrega al resto
                logger.error(f"❌ Error en suscriptor de {table}: {e}")
        return delivered


change_bus = ChangeBus()


# =============================================================================
# ===================== CAPTURA DE CAMBIOS (SQLALCHEMY) =======================
# =============================================================================

def row_snapshot(obj) -> tuple[str, dict]:
    """(nombre de tabla, columnas en formato JSON) de una fila ORM"""
    mapper = sa_inspect(obj).mapper
    record = {attr.key: getattr(obj, attr.key) for attr in mapper.column_attrs}
    return mapper.local_table.name, jsonable_encoder(record)


def record_change(session: Session, obj, event_type: str = UPDATE) -> None:
    """
    Apunta un cambio para publicarlo con el próximo commit.
    Un INSERT seguido de UPDATE en la misma transacción sigue siendo INSERT.
    """
    table, record = row_snapshot(obj)
    pending = session.info.setdefault(_PENDING_KEY, {})
    key = (table, tuple(sa_inspect(obj).mapper.primary_key_from_instance(obj)))

    previous = pending.get(key)
    if previous and previous["event"] == INSERT and event_type == UPDATE:
        event_type = INSERT
    pending[key] = {"table": table, "event": event_type, "record": record}


@event.listens_for(Session, "after_flush")
def _collect_flushed_rows(session, flush_context):
    for obj in session.new:
        record_change(session, obj, INSERT)
    for obj in session.dirty:
        if session.is_modified(obj, include_collections=False):
            record_change(session, obj, UPDATE)
    for obj in session.deleted:
        record_change(session, obj, DELETE)


@event.listens_for(Session, "after_commit")
def _publish_committed_rows(session):
    pending = session.info.pop(_PENDING_KEY, None)
    if not pending:
        return
    for change in pending.values():
        change_bus.publish(change)


@event.listens_for(Session, "after_rollback")
def _discard_rolled_back_rows(session):
    session.info.pop(_PENDING_KEY, None)
