"""
=============================================================================
SCHEDULER.PY — Tareas Automáticas
=============================================================================
Lo que pasa sin que el usuario haga nada.

Funciones:
  1. Recordatorios: cuando llega la hora de un recordatorio se crea una
     notificación in-app y, si el perfil tiene Telegram, se le manda también
  2. Retos caducados: a las 00:05 UTC los retos activos cuya fecha fin ya
     pasó pasan a failed

Usa APScheduler con CronTrigger para ejecutar tareas a horas específicas.

¿Cómo funciona?
  - Cada MINUTO se ejecuta check_reminders()
  - Busca recordatorios vencidos, no completados y aún sin avisar
  - Marca notified_at para no avisar dos veces
"""

import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from telegram import Bot
from telegram.constants import ParseMode
from telegram.helpers import escape_markdown

from database import SessionLocal
from models import Reminder, Profile
from progression import notify, expire_challenges

logger = logging.getLogger("timewallet.scheduler")

# Referencias globales (se asignan al arrancar)
bot_instance: Optional[Bot] = None
scheduler: Optional[AsyncIOScheduler] = None


# =============================================================================
# ===================== ENVÍO DE MENSAJES =====================================
# =============================================================================

async def send_telegram_message(chat_id: str, text: str) -> bool:
    """
    Envía un mensaje por Telegram.
    Función centralizada para no repetir try/except en cada lugar.
    """
    if not bot_instance:
        return False

    try:
        await bot_instance.send_message(
            chat_id=chat_id,
            text=text,
            parse_mode=ParseMode.MARKDOWN_V2
        )
        return True
    except Exception as e:
        logger.error(f"Error enviando mensaje a {chat_id}: {e}")
        return False


def reminder_message(item: dict) -> str:
    """Texto MarkdownV2 de un recordatorio"""
    lines = [f"⏰ *{escape_markdown(item['title'], version=2)}*"]
    if item.get("description"):
        lines.append(escape_markdown(item["description"], version=2))
    return "\n\n".join(lines)


# =============================================================================
# ===================== RECORDATORIOS =========================================
# =============================================================================

def dispatch_due_reminders(db: Session, now: datetime) -> list[dict]:
    """
    Convierte los recordatorios vencidos en notificaciones in-app.

    Un recordatorio se avisa UNA vez: reminder_date <= now, no completado
    y notified_at vacío. Retorna lo entregado (para el envío por Telegram).
    """
    due = db.query(Reminder).filter(
        Reminder.is_completed == False,
        Reminder.notified_at == None,
        Reminder.reminder_date <= now
    ).order_by(Reminder.reminder_date).all()

    delivered = []
    for reminder in due:
        notify(
            db, reminder.user_id,
            f"Reminder: {reminder.title}",
            reminder.description or "It's time!",
            "reminder"
        )
        reminder.notified_at = now

        profile = db.get(Profile, reminder.user_id)
        delivered.append({
            "reminder_id": reminder.id,
            "user_id": reminder.user_id,
            "title": reminder.title,
            "description": reminder.description,
            "telegram_chat_id": profile.telegram_chat_id if profile else None,
        })

    db.commit()
    if delivered:
        logger.info(f"⏰ {len(delivered)} recordatorios entregados")
    return delivered


async def check_reminders():
    """
    Se ejecuta cada minuto.
    Entrega los recordatorios vencidos y los reenvía por Telegram si se puede.
    """
    db = SessionLocal()
    try:
        delivered = dispatch_due_reminders(db, datetime.utcnow())
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"❌ Error entregando recordatorios: {e}")
        return
    finally:
        db.close()

    for item in delivered:
        if item["telegram_chat_id"]:
            await send_telegram_message(item["telegram_chat_id"], reminder_message(item))


# =============================================================================
# ===================== TAREA DE MEDIANOCHE ===================================
# =============================================================================

async def midnight_check():
    """
    Se ejecuta a las 00:05 UTC.
    Los retos activos cuya fecha fin ya pasó se marcan como failed.
    """
    db = SessionLocal()
    try:
        expired = expire_challenges(db, datetime.utcnow())
        db.commit()
        logger.info(f"🌙 Midnight check: {expired} retos caducados")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"❌ Error en midnight_check: {e}")
    finally:
        db.close()


# =============================================================================
# ===================== INICIALIZAR SCHEDULER =================================
# =============================================================================

def create_scheduler(bot: Optional[Bot] = None) -> AsyncIOScheduler:
    """
    Crea y configura el scheduler con las tareas automáticas.

    Tareas:
      - Cada minuto: entregar recordatorios vencidos
      - A las 00:05: caducar retos
    Sin bot los recordatorios siguen llegando como notificación in-app.
    """
    global bot_instance, scheduler
    bot_instance = bot

    scheduler = AsyncIOScheduler(timezone="UTC")

    scheduler.add_job(
        check_reminders,
        CronTrigger(second=0),  # Segundo 0 de cada minuto
        id="check_reminders",
        name="Entregar recordatorios",
        replace_existing=True
    )

    scheduler.add_job(
        midnight_check,
        CronTrigger(hour=0, minute=5),
        id="midnight_check",
        name="Caducar retos",
        replace_existing=True
    )

    logger.info("⏰ Scheduler configurado: recordatorios cada minuto + midnight check")
    return scheduler


def start_scheduler():
    """Arranca el scheduler"""
    if scheduler and not scheduler.running:
        scheduler.start()
        logger.info("⏰ Scheduler arrancado")


def stop_scheduler():
    """Para el scheduler"""
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("⏰ Scheduler parado")
