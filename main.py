"""
=============================================================================
MAIN.PY — La API de TimeWallet
=============================================================================
Este archivo define TODOS los endpoints de la API REST.

Organización por secciones:
  1. AUTH          → Registro, login, logout, sesión actual
  2. PROFILE       → Perfil y cartera de tiempo
  3. GOALS         → Objetivos con plazo y presupuesto de tiempo
  4. TASKS         → Pasos de cada objetivo (completar → cerrar objetivo)
  5. TRANSACTIONS  → Libro mayor de la cartera
  6. STREAKS       → Racha e insignias
  7. CHALLENGES    → Catálogo de retos, mis retos, unirse
  8. NOTIFICATIONS → Avisos in-app
  9. REMINDERS     → Recordatorios con fecha
  10. FOCUS        → Sesiones de foco (pomodoro)
  11. NOTEPAD      → Notas rápidas
  12. INSIGHTS     → Estadísticas por categoría
  13. REALTIME     → WebSocket con los cambios de la BD

Errores:
  - 401 sin sesión, 404 si no existe, 409 conflicto, 422 validación
  - 503 si falla una escritura (rollback, nada cambia, se puede reintentar)
  - 500 para cualquier otra cosa (con el error real en el JSON)
"""

import os
import asyncio
import logging
import traceback
from datetime import datetime, time, timedelta
from contextlib import asynccontextmanager, contextmanager
from typing import Optional

import pytz
from fastapi import FastAPI, Depends, HTTPException, status, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from telegram import Bot

from database import get_db, init_db, SessionLocal
from models import *
from schemas import *
from auth import (
    hash_password, verify_password, create_access_token,
    get_current_user, user_from_token, sign_out
)
from progression import (
    seed_challenges, settle_goal, goal_progress, get_or_create_streak,
    join_challenge, days_remaining, split_duration, format_duration,
    category_stats, focus_summary, next_break, notify
)
from realtime import change_bus
from scheduler import create_scheduler, start_scheduler, stop_scheduler

# ─────────────────────────────────────────────────────────────────────────────
# CONFIGURACIÓN
# ─────────────────────────────────────────────────────────────────────────────

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
ENABLE_SCHEDULER = os.getenv("ENABLE_SCHEDULER", "1").lower() not in ("0", "false", "no")

MAX_NOTIFICATIONS = 50
MAX_FOCUS_SESSIONS = 50
REALTIME_QUEUE_SIZE = int(os.getenv("REALTIME_QUEUE_SIZE", "100"))

# ─────────────────────────────────────────────────────────────────────────────
# LOGGING
# ─────────────────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s"
)
logger = logging.getLogger("timewallet.api")

# ─────────────────────────────────────────────────────────────────────────────
# INICIALIZACIÓN TEMPRANA DE LA BD
# ─────────────────────────────────────────────────────────────────────────────
# Las tablas y el catálogo de retos existen antes de la primera petición,
# también cuando la app se usa sin lifespan (TestClient sin "with").

try:
    init_db()
    logger.info("✅ Base de datos inicializada (startup)")
except Exception as e:
    logger.error(f"❌ Error inicializando BD: {e}")

try:
    _db = SessionLocal()
    try:
        seed_challenges(_db)
    finally:
        _db.close()
except Exception as e:
    logger.error(f"❌ Error en seeds: {e}")


# ─────────────────────────────────────────────────────────────────────────────
# LIFESPAN (Arranque y apagado)
# ─────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Arranque:
      1. Conectar el bot de Telegram (solo para enviar avisos)
      2. Arrancar el scheduler de recordatorios y retos

    Apagado:
      - Parar scheduler y bot limpiamente
    """
    logger.info("🚀 Arrancando TimeWallet...")

    bot = None
    if TELEGRAM_BOT_TOKEN:
        try:
            bot = Bot(TELEGRAM_BOT_TOKEN)
            await bot.initialize()
            logger.info("🤖 Bot de Telegram conectado")
        except Exception as e:
            logger.error(f"❌ Error conectando bot: {e}")
            bot = None
    else:
        logger.warning("⚠️ Sin TELEGRAM_BOT_TOKEN: recordatorios solo in-app")

    if ENABLE_SCHEDULER:
        try:
            create_scheduler(bot)
            start_scheduler()
        except Exception as e:
            logger.error(f"❌ Error arrancando scheduler: {e}")

    logger.info("🎉 TimeWallet operativo")

    yield  # ← La aplicación está corriendo

    logger.info("🛑 Apagando TimeWallet...")

    try:
        stop_scheduler()
    except Exception as e:
        logger.warning(f"Error parando scheduler: {e}")

    if bot:
        try:
            await bot.shutdown()
        except Exception as e:
            logger.warning(f"Error cerrando bot: {e}")

    logger.info("👋 Apagado completo")


# ─────────────────────────────────────────────────────────────────────────────
# APLICACIÓN FASTAPI
# ─────────────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="TimeWallet API",
    description="Objetivos con plazo, cartera de tiempo, rachas, insignias y retos",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS → la web (otro dominio) hace peticiones a esta API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─────────────────────────────────────────────────────────────────────────────
# ERRORES
# ─────────────────────────────────────────────────────────────────────────────

class StoreWriteError(Exception):
    """Falló una escritura en la BD; la transacción ya se deshizo"""

    def __init__(self, action: str):
        super().__init__(action)
        self.action = action


@contextmanager
def _store_write(db: Session, action: str):
    """
    Unidad de escritura de una petición: todo lo que pasa dentro del `with`
    (flush, UPDATE, settle_goal...) más el commit final.
    Si algo falla en la BD: rollback, log y StoreWriteError → 503 (el estado
    previo se queda como estaba y el cliente puede reintentar).
    """
    try:
        yield
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"❌ Error guardando ({action}): {e}")
        raise StoreWriteError(action) from e


def _commit(db: Session, action: str):
    """Confirma la transacción de la petición (escrituras de un solo paso)"""
    with _store_write(db, action):
        pass


@app.exception_handler(StoreWriteError)
async def store_write_error_handler(request: Request, exc: StoreWriteError):
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "detail": "No se pudo guardar el cambio. Inténtalo de nuevo.",
            "action": exc.action,
            "retryable": True
        }
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Captura errores no manejados y devuelve detalles útiles"""
    error_msg = str(exc)
    error_trace = traceback.format_exc()
    logger.error(f"❌ Error no manejado en {request.url}: {error_msg}\n{error_trace}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": error_msg,
            "type": type(exc).__name__,
            "path": str(request.url)
        }
    )


# =============================================================================
# ===================== HEALTH CHECK ==========================================
# =============================================================================

@app.get("/", tags=["Health"])
def health_check():
    """Verifica que la API está viva"""
    return {
        "status": "ok",
        "app": "TimeWallet",
        "version": "1.0.0",
        "timestamp": datetime.utcnow().isoformat()
    }


# =============================================================================
# ===================== SECCIÓN 1: AUTH =======================================
# =============================================================================

@app.post("/auth/register", response_model=TokenResponse, tags=["Auth"])
def register(data: UserRegister, db: Session = Depends(get_db)):
    """
    Registra un usuario nuevo.

    Flujo:
      1. Verificar que el email no existe
      2. Crear usuario + perfil (saldo 0) en la misma transacción
      3. Generar y devolver token JWT
    """
    existing = db.query(User).filter(User.email == data.email).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Ya existe una cuenta con este email"
        )

    with _store_write(db, "registro"):
        user = User(email=data.email, password_hash=hash_password(data.password))
        db.add(user)
        db.flush()
        db.add(Profile(id=user.id, username=data.username, balance=0))

    logger.info(f"👤 Nuevo usuario registrado: {user.email}")
    return TokenResponse(access_token=create_access_token(user), user_id=user.id)


@app.post("/auth/login", response_model=TokenResponse, tags=["Auth"])
def login(data: UserLogin, db: Session = Depends(get_db)):
    """Inicia sesión con email y contraseña"""
    user = db.query(User).filter(User.email == data.email).first()

    if not user or not verify_password(data.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Email o contraseña incorrectos"
        )

    return TokenResponse(access_token=create_access_token(user), user_id=user.id)


@app.post("/auth/logout", tags=["Auth"])
def logout(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Cierra la sesión: todos los tokens emitidos hasta ahora dejan de valer"""
    sign_out(user)
    _commit(db, "cerrar sesión")
    logger.info(f"👋 Sesión cerrada: {user.email}")
    return {"message": "Sesión cerrada"}


@app.get("/auth/me", response_model=UserResponse, tags=["Auth"])
def get_me(user: User = Depends(get_current_user)):
    """Devuelve el usuario de la sesión actual"""
    return user


# =============================================================================
# ===================== SECCIÓN 2: PROFILE & WALLET ===========================
# =============================================================================

def _get_profile(db: Session, user: User) -> Profile:
    """Perfil del usuario; se crea vacío si por lo que sea no existe"""
    profile = db.get(Profile, user.id)
    if profile is None:
        profile = Profile(id=user.id, balance=0)
        db.add(profile)
        _commit(db, "crear perfil")
        logger.info(f"🌱 Perfil creado para usuario {user.id}")
    return profile


@app.get("/profile", response_model=ProfileResponse, tags=["Profile"])
def get_profile(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return _get_profile(db, user)


@app.patch("/profile", response_model=ProfileResponse, tags=["Profile"])
def update_profile(
    data: ProfileUpdate,
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    """
    Actualiza el perfil. El saldo NO se puede tocar desde aquí:
    solo cambia al completar objetivos.
    """
    profile = _get_profile(db, user)
    update_data = data.model_dump(exclude_unset=True)

    if "timezone" in update_data:
        if update_data["timezone"] not in pytz.all_timezones_set:
            raise HTTPException(status_code=422, detail="Zona horaria desconocida")

    for key, value in update_data.items():
        setattr(profile, key, value)

    _commit(db, "actualizar perfil")
    return profile


@app.get("/wallet", response_model=WalletResponse, tags=["Profile"])
def get_wallet(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Saldo de tiempo en segundos y ya formateado"""
    balance = _get_profile(db, user).balance or 0
    return WalletResponse(
        balance=balance,
        formatted=format_duration(balance),
        **split_duration(balance)
    )


# =============================================================================
# ===================== SECCIÓN 3: GOALS ======================================
# =============================================================================

def _get_goal(db: Session, user: User, goal_id: int) -> Goal:
    goal = db.query(Goal).filter(Goal.id == goal_id, Goal.user_id == user.id).first()
    if not goal:
        raise HTTPException(status_code=404, detail="Objetivo no encontrado")
    return goal


def _goal_detail(goal: Goal, now: datetime) -> GoalDetail:
    detail = GoalDetail.model_validate(goal)
    detail.progress = goal_progress(goal.tasks)
    detail.is_overdue = goal.status == GoalStatus.ongoing.value and now >= goal.deadline
    return detail


@app.post("/goals", response_model=GoalDetail, tags=["Goals"])
def create_goal(data: GoalCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """
    Crea un objetivo con sus tareas.
    deadline = ahora + plazo; time_allocated = plazo en segundos.
    """
    now = datetime.utcnow()
    hours = data.duration_hours

    with _store_write(db, "crear objetivo"):
        goal = Goal(
            user_id=user.id,
            title=data.title,
            description=data.description,
            category=data.category.value,
            deadline=now + timedelta(hours=hours),
            time_allocated=hours * 3600,
            status=GoalStatus.ongoing.value,
            created_at=now,
            updated_at=now
        )
        db.add(goal)
        db.flush()

        for position, task_data in enumerate(data.tasks):
            db.add(Task(
                goal_id=goal.id,
                title=task_data.title,
                description=task_data.description,
                position=position,
                completed=False
            ))

    db.refresh(goal)

    logger.info(f"🎯 Objetivo creado: {goal.title} ({hours}h, user {user.id})")
    return _goal_detail(goal, now)


@app.get("/goals", response_model=list[GoalResponse], tags=["Goals"])
def list_goals(
    status_filter: Optional[str] = Query(default=None, alias="status", pattern=r"^(ongoing|completed|failed)$"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Lista objetivos (los más nuevos primero)"""
    query = db.query(Goal).filter(Goal.user_id == user.id)
    if status_filter:
        query = query.filter(Goal.status == status_filter)
    return query.order_by(Goal.created_at.desc(), Goal.id.desc()).all()


@app.get("/goals/{goal_id}", response_model=GoalDetail, tags=["Goals"])
def get_goal(goal_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return _goal_detail(_get_goal(db, user, goal_id), datetime.utcnow())


@app.delete("/goals/{goal_id}", tags=["Goals"])
def delete_goal(goal_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """
    Elimina un objetivo y sus tareas.
    El tiempo ya acreditado NO se devuelve ni se resta.
    """
    goal = _get_goal(db, user, goal_id)

    with _store_write(db, "borrar objetivo"):
        # Las filas que lo referencian se quedan, sin objetivo
        db.query(Transaction).filter(Transaction.goal_id == goal.id).update(
            {Transaction.goal_id: None}, synchronize_session=False
        )
        db.query(FocusSession).filter(FocusSession.goal_id == goal.id).update(
            {FocusSession.goal_id: None}, synchronize_session=False
        )
        db.delete(goal)
    return {"message": f"Objetivo '{goal.title}' eliminado"}


# =============================================================================
# ===================== SECCIÓN 4: TASKS ======================================
# =============================================================================

@app.get("/goals/{goal_id}/tasks", response_model=list[TaskResponse], tags=["Tasks"])
def list_tasks(goal_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Tareas del objetivo en orden"""
    goal = _get_goal(db, user, goal_id)
    return db.query(Task).filter(Task.goal_id == goal.id).order_by(Task.position).all()


@app.patch("/tasks/{task_id}/toggle", response_model=TaskToggleResult, tags=["Tasks"])
def toggle_task(task_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """
    Marca/desmarca una tarea.

    Si con esto TODAS las tareas del objetivo quedan completadas, el objetivo
    se cierra (settle_goal): antes del plazo → completed + crédito,
    después → failed. Todo en una sola transacción.
    """
    task = db.query(Task).join(Goal, Task.goal_id == Goal.id).filter(
        Task.id == task_id, Goal.user_id == user.id
    ).first()
    if not task:
        raise HTTPException(status_code=404, detail="Tarea no encontrada")

    goal = task.goal
    if goal.status != GoalStatus.ongoing.value:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"El objetivo ya está cerrado ({goal.status})"
        )

    now = datetime.utcnow()
    outcome = None
    with _store_write(db, "completar tarea"):
        task.completed = not task.completed
        task.completed_at = now if task.completed else None
        goal.last_progress_update = now
        db.flush()

        if goal.tasks and all(t.completed for t in goal.tasks):
            outcome = settle_goal(db, goal, now)

    return TaskToggleResult(
        task=TaskResponse.model_validate(task),
        goal_progress=goal_progress(goal.tasks),
        outcome=GoalOutcome.model_validate(outcome, from_attributes=True) if outcome else None
    )


# =============================================================================
# ===================== SECCIÓN 5: TRANSACTIONS ===============================
# =============================================================================

@app.get("/transactions", response_model=list[TransactionResponse], tags=["Transactions"])
def list_transactions(
    limit: int = Query(default=50, ge=1, le=500),
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    """Movimientos de la cartera (los más recientes primero)"""
    return db.query(Transaction).filter(
        Transaction.user_id == user.id
    ).order_by(Transaction.created_at.desc(), Transaction.id.desc()).limit(limit).all()


# =============================================================================
# ===================== SECCIÓN 6: STREAKS & BADGES ===========================
# =============================================================================

@app.get("/streak", response_model=StreakResponse, tags=["Streaks"])
def get_streak(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Racha del usuario (se crea vacía la primera vez)"""
    with _store_write(db, "crear racha"):
        streak = get_or_create_streak(db, user.id)
    return streak


@app.get("/badges", response_model=list[BadgeResponse], tags=["Streaks"])
def list_badges(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return db.query(Badge).filter(
        Badge.user_id == user.id
    ).order_by(Badge.earned_at.desc(), Badge.id.desc()).all()


# =============================================================================
# ===================== SECCIÓN 7: CHALLENGES =================================
# =============================================================================

def _challenge_detail(uc: UserChallenge, now: datetime) -> UserChallengeDetail:
    detail = UserChallengeDetail.model_validate(uc)
    challenge = uc.challenge
    if challenge:
        detail.progress = min(100.0, round(uc.goals_completed / challenge.target_goals * 100, 1))
        detail.days_remaining = days_remaining(uc, challenge, now)
    return detail


@app.get("/challenges", response_model=list[ChallengeResponse], tags=["Challenges"])
def list_challenges(db: Session = Depends(get_db)):
    """Catálogo de retos (de más corto a más largo)"""
    return db.query(Challenge).order_by(Challenge.duration_days, Challenge.id).all()


@app.get("/challenges/mine", response_model=MyChallenges, tags=["Challenges"])
def my_challenges(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Retos activos y completados del usuario"""
    now = datetime.utcnow()
    user_challenges = db.query(UserChallenge).filter(
        UserChallenge.user_id == user.id
    ).order_by(UserChallenge.started_at.desc()).all()

    return MyChallenges(
        active=[_challenge_detail(uc, now) for uc in user_challenges
                if uc.status == ChallengeStatus.active.value],
        completed=[_challenge_detail(uc, now) for uc in user_challenges
                   if uc.status == ChallengeStatus.completed.value],
    )


@app.post("/challenges/{challenge_id}/join", response_model=Optional[UserChallengeResponse], tags=["Challenges"])
def join_challenge_endpoint(challenge_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """
    Se une a un reto.
    Si ya lo tiene activo no hace nada y devuelve null.
    """
    challenge = db.get(Challenge, challenge_id)
    if not challenge:
        raise HTTPException(status_code=404, detail="Reto no encontrado")

    with _store_write(db, "unirse a reto"):
        user_challenge = join_challenge(db, user.id, challenge.id)
        if user_challenge is not None:
            notify(db, user.id, "Challenge joined! ⚡",
                   f"You have {challenge.duration_days} days to complete {challenge.target_goals} goals")

    return user_challenge


# =============================================================================
# ===================== SECCIÓN 8: NOTIFICATIONS ==============================
# =============================================================================

def _get_notification(db: Session, user: User, notification_id: int) -> Notification:
    notification = db.query(Notification).filter(
        Notification.id == notification_id, Notification.user_id == user.id
    ).first()
    if not notification:
        raise HTTPException(status_code=404, detail="Notificación no encontrada")
    return notification


@app.get("/notifications", response_model=NotificationList, tags=["Notifications"])
def list_notifications(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Últimas notificaciones + cuántas quedan sin leer"""
    notifications = db.query(Notification).filter(
        Notification.user_id == user.id
    ).order_by(Notification.created_at.desc(), Notification.id.desc()).limit(MAX_NOTIFICATIONS).all()

    unread = db.query(Notification).filter(
        Notification.user_id == user.id, Notification.is_read == False
    ).count()

    return NotificationList(
        notifications=[NotificationResponse.model_validate(n) for n in notifications],
        unread_count=unread
    )


@app.post("/notifications", response_model=NotificationResponse, tags=["Notifications"])
def create_notification(
    data: NotificationCreate,
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    notification = notify(db, user.id, data.title, data.message, data.type)
    _commit(db, "crear notificación")
    return notification


@app.patch("/notifications/read-all", tags=["Notifications"])
def mark_all_read(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    with _store_write(db, "marcar notificaciones"):
        unread = db.query(Notification).filter(
            Notification.user_id == user.id, Notification.is_read == False
        ).all()
        for notification in unread:
            notification.is_read = True
    return {"updated": len(unread)}


@app.patch("/notifications/{notification_id}/read", response_model=NotificationResponse, tags=["Notifications"])
def mark_read(notification_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    notification = _get_notification(db, user, notification_id)
    notification.is_read = True
    _commit(db, "marcar notificación")
    return notification


@app.delete("/notifications/{notification_id}", tags=["Notifications"])
def delete_notification(notification_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    db.delete(_get_notification(db, user, notification_id))
    _commit(db, "borrar notificación")
    return {"message": "Notificación eliminada"}


# =============================================================================
# ===================== SECCIÓN 9: REMINDERS ==================================
# =============================================================================

def _get_reminder(db: Session, user: User, reminder_id: int) -> Reminder:
    reminder = db.query(Reminder).filter(
        Reminder.id == reminder_id, Reminder.user_id == user.id
    ).first()
    if not reminder:
        raise HTTPException(status_code=404, detail="Recordatorio no encontrado")
    return reminder


@app.post("/reminders", response_model=ReminderResponse, tags=["Reminders"])
def create_reminder(data: ReminderCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Crea un recordatorio nuevo"""
    reminder = Reminder(
        user_id=user.id,
        title=data.title,
        description=data.description,
        reminder_date=data.reminder_date,
        is_completed=False
    )
    db.add(reminder)
    _commit(db, "crear recordatorio")
    db.refresh(reminder)
    return reminder


@app.get("/reminders", response_model=list[ReminderResponse], tags=["Reminders"])
def list_reminders(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Recordatorios ordenados por fecha"""
    return db.query(Reminder).filter(
        Reminder.user_id == user.id
    ).order_by(Reminder.reminder_date.asc()).all()


@app.patch("/reminders/{reminder_id}", response_model=ReminderResponse, tags=["Reminders"])
def update_reminder(
    reminder_id: int, data: ReminderUpdate,
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    """Actualiza un recordatorio"""
    reminder = _get_reminder(db, user, reminder_id)

    update_data = data.model_dump(exclude_unset=True)
    # Nueva fecha → se vuelve a avisar
    if "reminder_date" in update_data and update_data["reminder_date"] != reminder.reminder_date:
        reminder.notified_at = None

    for key, value in update_data.items():
        setattr(reminder, key, value)

    _commit(db, "actualizar recordatorio")
    return reminder


@app.patch("/reminders/{reminder_id}/toggle", response_model=ReminderResponse, tags=["Reminders"])
def toggle_reminder(reminder_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    reminder = _get_reminder(db, user, reminder_id)
    reminder.is_completed = not reminder.is_completed
    _commit(db, "completar recordatorio")
    return reminder


@app.delete("/reminders/{reminder_id}", tags=["Reminders"])
def delete_reminder(reminder_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Elimina un recordatorio"""
    db.delete(_get_reminder(db, user, reminder_id))
    _commit(db, "borrar recordatorio")
    return {"message": "Recordatorio eliminado"}


# =============================================================================
# ===================== SECCIÓN 10: FOCUS =====================================
# =============================================================================

@app.post("/focus/sessions", response_model=FocusSessionResult, tags=["Focus"])
def record_focus_session(
    data: FocusSessionCreate,
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    """
    Guarda una sesión terminada del temporizador.
    Tras una sesión de trabajo se avisa y se propone el siguiente descanso
    (largo cada N sesiones de trabajo del día).
    """
    if data.goal_id is not None:
        _get_goal(db, user, data.goal_id)

    now = datetime.utcnow()
    suggestion = None
    with _store_write(db, "guardar sesión de foco"):
        session = FocusSession(
            user_id=user.id,
            goal_id=data.goal_id,
            duration_minutes=data.duration_minutes,
            session_type=data.session_type,
            completed_at=now
        )
        db.add(session)
        db.flush()

        if data.session_type == SessionType.work.value:
            today_work = db.query(FocusSession).filter(
                FocusSession.user_id == user.id,
                FocusSession.session_type == SessionType.work.value,
                FocusSession.completed_at >= datetime.combine(now.date(), time.min)
            ).count()
            suggestion = next_break(
                today_work,
                data.break_minutes,
                data.long_break_minutes,
                data.sessions_before_long_break
            )
            notify(db, user.id, "Focus session complete!",
                   f"You focused for {data.duration_minutes} minutes. "
                   f"Take a {suggestion['break_minutes']} minute break.", "success")

    return FocusSessionResult(
        session=FocusSessionResponse.model_validate(session),
        next_break=NextBreak(**suggestion) if suggestion else None
    )


@app.get("/focus/stats", response_model=FocusStats, tags=["Focus"])
def get_focus_stats(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Minutos de foco de hoy y totales (sobre las últimas sesiones)"""
    sessions = db.query(FocusSession).filter(
        FocusSession.user_id == user.id
    ).order_by(FocusSession.completed_at.desc()).limit(MAX_FOCUS_SESSIONS).all()

    summary = focus_summary(sessions, datetime.utcnow().date())
    return FocusStats(
        **summary,
        sessions=[FocusSessionResponse.model_validate(s) for s in sessions]
    )


# =============================================================================
# ===================== SECCIÓN 11: NOTEPAD ===================================
# =============================================================================

def _get_entry(db: Session, user: User, entry_id: int) -> NotepadEntry:
    entry = db.query(NotepadEntry).filter(
        NotepadEntry.id == entry_id, NotepadEntry.user_id == user.id
    ).first()
    if not entry:
        raise HTTPException(status_code=404, detail="Nota no encontrada")
    return entry


@app.get("/notepad", response_model=list[NotepadEntryResponse], tags=["Notepad"])
def list_notes(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return db.query(NotepadEntry).filter(
        NotepadEntry.user_id == user.id
    ).order_by(NotepadEntry.created_at.desc(), NotepadEntry.id.desc()).all()


@app.post("/notepad", response_model=NotepadEntryResponse, tags=["Notepad"])
def create_note(data: NotepadEntryCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    entry = NotepadEntry(user_id=user.id, content=data.content)
    db.add(entry)
    _commit(db, "guardar nota")
    db.refresh(entry)
    return entry


@app.patch("/notepad/{entry_id}", response_model=NotepadEntryResponse, tags=["Notepad"])
def update_note(
    entry_id: int, data: NotepadEntryCreate,
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    entry = _get_entry(db, user, entry_id)
    entry.content = data.content
    entry.updated_at = datetime.utcnow()
    _commit(db, "actualizar nota")
    return entry


@app.delete("/notepad/{entry_id}", tags=["Notepad"])
def delete_note(entry_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    db.delete(_get_entry(db, user, entry_id))
    _commit(db, "borrar nota")
    return {"message": "Nota eliminada"}


# =============================================================================
# ===================== SECCIÓN 12: INSIGHTS ==================================
# =============================================================================

@app.get("/insights", response_model=InsightsResponse, tags=["Insights"])
def get_insights(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Objetivos agrupados por categoría (para las gráficas)"""
    goals = db.query(Goal).filter(Goal.user_id == user.id).all()
    return category_stats(goals)


# =============================================================================
# ===================== SECCIÓN 13: REALTIME ==================================
# =============================================================================
# Cada tabla con la columna que dice de quién es la fila

REALTIME_TABLES = {
    "goals": "user_id",
    "transactions": "user_id",
    "profiles": "id",
    "notifications": "user_id",
    "notepad_entries": "user_id",
    "reminders": "user_id",
}



def _put_dropping_oldest(queue: asyncio.Queue, change: dict) -> bool:
    """Encola el cambio; si la cola está llena (cliente lento) descarta el más antiguo"""
    dropped = False
    if queue.full():
        queue.get_nowait()
        dropped = True
    queue.put_nowait(change)
    return dropped


@app.websocket("/realtime/{table}")
async def realtime_feed(websocket: WebSocket, table: str, token: str = ""):
    """
    Canal de cambios de una tabla, solo con las filas del usuario.

      ws://.../realtime/goals?token=<jwt>

    Mensajes: {"table", "event": INSERT|UPDATE|DELETE, "record": {...}}
    """
    await websocket.accept()

    if table not in REALTIME_TABLES:
        await websocket.send_json({"error": f"Tabla no disponible: {table}"})
        await websocket.close(code=1008)
        return

    db = SessionLocal()
    try:
        user = user_from_token(token, db)
    finally:
        db.close()

    if user is None:
        await websocket.send_json({"error": "Token inválido, expirado o sesión cerrada"})
        await websocket.close(code=1008)
        return

    # Los commits llegan desde los hilos de los endpoints síncronos
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue(maxsize=REALTIME_QUEUE_SIZE)

    def enqueue(change):
        if _put_dropping_oldest(queue, change):
            logger.warning(f"⚠️ Cola llena para usuario {user.id} en {table}, se descarta un cambio")

    unsubscribe = change_bus.subscribe(
        table,
        {REALTIME_TABLES[table]: user.id},
        lambda change: loop.call_soon_threadsafe(enqueue, change)
    )

    async def forward_changes():
        while True:
            change = await queue.get()
            await websocket.send_json(change)

    await websocket.send_json({"type": "subscribed", "table": table})
    sender = asyncio.create_task(forward_changes())
    logger.info(f"🔌 Usuario {user.id} suscrito a {table}")

    try:
        while True:
            # El cliente no manda nada útil; esto detecta la desconexión
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"🔌 Usuario {user.id} desconectado de {table}")
    finally:
        unsubscribe()
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
