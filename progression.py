"""
=============================================================================
PROGRESSION.PY — Motor de Progresión
=============================================================================
Gestiona:
  - Cierre de objetivos (completed / failed) y crédito en la cartera
  - Rachas (streaks) por día natural del usuario
  - Insignias (badges) por umbrales
  - Retos (challenges): unirse, progreso, caducidad
  - Cálculos derivados para las vistas (insights, foco, cartera)

Reglas de diseño:
  - Todas las funciones reciben la sesión de BD explícitamente.
  - Las funciones que escriben solo hacen add/flush: quien llama hace el
    commit, así una acción del usuario = una única transacción.
  - El saldo se toca SOLO con increment_balance (UPDATE atómico).
"""

from datetime import date, datetime, timedelta
import logging

import pytz
from sqlalchemy.orm import Session

from models import (
    Profile, Goal, Task, Transaction, UserStreak, Badge, Challenge,
    UserChallenge, Notification, FocusSession,
    GoalStatus, ChallengeStatus, TransactionType, SessionType
)
from realtime import record_change

logger = logging.getLogger("timewallet.progression")


# =============================================================================
# ===================== FECHAS ================================================
# =============================================================================

def local_today(timezone_name: str | None, now: datetime) -> date:
    """
    Día natural del usuario para un instante UTC (naive).
    Una zona horaria desconocida se trata como UTC.
    """
    try:
        tz = pytz.timezone(timezone_name or "UTC")
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Zona horaria desconocida: {timezone_name!r}, usando UTC")
        tz = pytz.utc
    return pytz.utc.localize(now).astimezone(tz).date()


def day_diff(today: date, last_date: date) -> int:
    """Días naturales entre dos fechas (negativo si el reloj fue hacia atrás)"""
    return (today - last_date).days


# =============================================================================
# ===================== NOTIFICACIONES ========================================
# =============================================================================

def notify(db: Session, user_id: int, title: str, message: str, type: str = "info") -> Notification:
    """Crea una notificación in-app (se confirma con el resto de la acción)"""
    notification = Notification(
        user_id=user_id, title=title, message=message, type=type, is_read=False
    )
    db.add(notification)
    return notification


# =============================================================================
# ===================== CARTERA (BALANCE) =====================================
# =============================================================================

def increment_balance(db: Session, user_id: int, amount: int) -> None:
    """
    Suma `amount` segundos al saldo del usuario.

    Es un UPDATE ... SET balance = balance + :amount, no un
    leer-modificar-escribir: dos créditos concurrentes no se pisan.
    """
    matched = db.query(Profile).filter(Profile.id == user_id).update(
        {Profile.balance: Profile.balance + amount},
        synchronize_session="fetch"
    )
    if matched == 0:
        raise LookupError(f"No existe perfil para el usuario {user_id}")
    record_change(db, db.get(Profile, user_id))


def split_duration(seconds: int) -> dict:
    """Descompone un saldo con signo en horas/minutos/segundos"""
    total = abs(seconds)
    return {
        "hours": total // 3600,
        "minutes": (total % 3600) // 60,
        "seconds": total % 60,
        "is_negative": seconds < 0,
    }


def format_duration(seconds: int) -> str:
    """-3723 → "-1h 02m 03s" """
    parts = split_duration(seconds)
    sign = "-" if parts["is_negative"] else ""
    return f"{sign}{parts['hours']}h {parts['minutes']:02d}m {parts['seconds']:02d}s"


# =============================================================================
# ===================== SISTEMA DE RACHAS =====================================
# =============================================================================

def get_or_create_streak(db: Session, user_id: int) -> UserStreak:
    """Devuelve la racha del usuario; la crea vacía la primera vez"""
    streak = db.query(UserStreak).filter(UserStreak.user_id == user_id).first()
    if streak is None:
        streak = UserStreak(
            user_id=user_id,
            current_streak=0,
            longest_streak=0,
            last_streak_date=None,
            total_goals_completed=0,
        )
        db.add(streak)
        db.flush()
        logger.info(f"🌱 Racha inicializada para usuario {user_id}")
    return streak


def next_streak(current: int, longest: int, last_date: date | None, today: date):
    """
    Calcula (racha_actual, racha_más_larga) tras una acción válida hoy.

    Lógica:
      - Sin fecha previa       → 1 (primera acción)
      - Mismo día (diff 0)     → None (no se escribe nada)
      - Día siguiente (diff 1) → racha + 1
      - Hueco (diff > 1)       → 1
      - Fecha futura (diff < 0, reloj atrasado) → None, igual que mismo día
    """
    if last_date is None:
        new_current = 1
    else:
        diff = day_diff(today, last_date)
        if diff <= 0:
            return None
        new_current = current + 1 if diff == 1 else 1

    return new_current, max(longest, new_current)


def update_streak(db: Session, user_id: int, today: date) -> dict:
    """
    Aplica una acción válida a la racha del usuario y revisa insignias.

    Retorna:
      {"streak": UserStreak, "changed": bool, "new_badges": [Badge, ...]}
    """
    streak = get_or_create_streak(db, user_id)

    result = next_streak(
        streak.current_streak, streak.longest_streak, streak.last_streak_date, today
    )
    if result is None:
        return {"streak": streak, "changed": False, "new_badges": []}

    streak.current_streak, streak.longest_streak = result
    streak.last_streak_date = today
    streak.total_goals_completed += 1
    db.flush()

    logger.info(
        f"🔥 Racha de usuario {user_id}: {streak.current_streak} días "
        f"(mejor {streak.longest_streak}, total {streak.total_goals_completed})"
    )

    # Las insignias se evalúan con los valores NUEVOS
    new_badges = check_for_badges(
        db, user_id, streak.current_streak, streak.total_goals_completed
    )
    return {"streak": streak, "changed": True, "new_badges": new_badges}


# =============================================================================
# ===================== SISTEMA DE INSIGNIAS ==================================
# =============================================================================

BADGE_THRESHOLDS = [
    # ── Rachas ──
    {"metric": "current_streak", "threshold": 7, "type": "streak_7", "name": "Week Warrior"},
    {"metric": "current_streak", "threshold": 30, "type": "streak_30", "name": "Monthly Master"},

    # ── Objetivos completados ──
    {"metric": "total_goals_completed", "threshold": 10, "type": "goals_10", "name": "Goal Getter"},
    {"metric": "total_goals_completed", "threshold": 50, "type": "goals_50", "name": "Achievement Hunter"},
    {"metric": "total_goals_completed", "threshold": 100, "type": "goals_100", "name": "Century Champion"},
]


def badges_to_award(current_streak: int, total_goals: int, owned_types) -> list[tuple[str, str]]:
    """(tipo, nombre) de cada umbral alcanzado cuya insignia aún no se tiene"""
    metrics = {
        "current_streak": current_streak,
        "total_goals_completed": total_goals,
    }
    return [
        (row["type"], row["name"])
        for row in BADGE_THRESHOLDS
        if metrics[row["metric"]] >= row["threshold"] and row["type"] not in owned_types
    ]


def owned_badge_types(db: Session, user_id: int) -> set[str]:
    return {
        badge_type for (badge_type,) in
        db.query(Badge.badge_type).filter(Badge.user_id == user_id).all()
    }


def check_for_badges(db: Session, user_id: int, current_streak: int, total_goals: int) -> list[Badge]:
    """
    Concede las insignias de umbral que correspondan.
    Retorna la lista de insignias recién concedidas.
    """
    owned = owned_badge_types(db, user_id)
    return [
        _insert_badge(db, user_id, badge_type, name)
        for badge_type, name in badges_to_award(current_streak, total_goals, owned)
    ]


def grant_badge(db: Session, user_id: int, badge_type: str, badge_name: str) -> Badge | None:
    """Concede una insignia concreta si el usuario aún no la tiene"""
    if badge_type in owned_badge_types(db, user_id):
        logger.info(f"Usuario {user_id} ya tiene la insignia {badge_type}")
        return None
    return _insert_badge(db, user_id, badge_type, badge_name)


def _insert_badge(db: Session, user_id: int, badge_type: str, badge_name: str) -> Badge:
    # La restricción única (user_id, badge_type) de la tabla es la red de
    # seguridad si dos peticiones llegan a la vez
    badge = Badge(user_id=user_id, badge_type=badge_type, badge_name=badge_name)
    db.add(badge)
    db.flush()
    notify(db, user_id, "New badge earned! 🏅", f"You earned \"{badge_name}\"", "badge")
    logger.info(f"🏅 Usuario {user_id} consiguió: {badge_name} ({badge_type})")
    return badge


# =============================================================================
# ===================== SISTEMA DE RETOS ======================================
# =============================================================================

CHALLENGE_CATALOG = [
    {"name": "Weekend Sprint", "description": "Complete 2 goals in 3 days",
     "duration_days": 3, "target_goals": 2, "badge_reward": "challenge_weekend_sprint"},
    {"name": "Week of Focus", "description": "Complete 5 goals in 7 days",
     "duration_days": 7, "target_goals": 5, "badge_reward": "challenge_week_focus"},
    {"name": "Fortnight Grind", "description": "Complete 10 goals in 14 days",
     "duration_days": 14, "target_goals": 10, "badge_reward": "challenge_fortnight_grind"},
    {"name": "Monthly Marathon", "description": "Complete 20 goals in 30 days",
     "duration_days": 30, "target_goals": 20, "badge_reward": "challenge_monthly_marathon"},
]


def seed_challenges(db: Session):
    """
    Inserta los retos del catálogo si no existen.
    Se ejecuta al arrancar la aplicación.
    """
    for ch_def in CHALLENGE_CATALOG:
        existing = db.query(Challenge).filter(Challenge.name == ch_def["name"]).first()
        if not existing:
            db.add(Challenge(**ch_def))
    db.commit()
    logger.info(f"✅ {len(CHALLENGE_CATALOG)} retos verificados en BD")


def challenge_end(user_challenge: UserChallenge, challenge: Challenge) -> datetime:
    """Fin del reto: inicio + duración en días"""
    return user_challenge.started_at + timedelta(days=challenge.duration_days)


def days_remaining(user_challenge: UserChallenge, challenge: Challenge, now: datetime) -> int:
    return max(0, (challenge_end(user_challenge, challenge) - now).days)


def join_challenge(db: Session, user_id: int, challenge_id: int, now: datetime | None = None) -> UserChallenge | None:
    """
    Une al usuario a un reto.
    Si ya tiene ese reto activo no hace nada y retorna None.
    """
    existing = db.query(UserChallenge).filter(
        UserChallenge.user_id == user_id,
        UserChallenge.challenge_id == challenge_id,
        UserChallenge.status == ChallengeStatus.active.value
    ).first()
    if existing:
        return None

    user_challenge = UserChallenge(
        user_id=user_id,
        challenge_id=challenge_id,
        started_at=now or datetime.utcnow(),
        goals_completed=0,
        status=ChallengeStatus.active.value,
    )
    db.add(user_challenge)
    db.flush()
    logger.info(f"⚡ Usuario {user_id} se unió al reto {challenge_id}")
    return user_challenge


def update_challenge_progress(db: Session, user_id: int, now: datetime):
    """
    Suma un objetivo completado a cada reto activo del usuario.

    Por cada reto activo:
      - goals_completed + 1
      - si llega al objetivo → completed (+ insignia de recompensa)
      - si no, y ya pasó la fecha fin → failed
      - si no → sigue activo

    Retorna (retos_actualizados, insignias_nuevas).
    """
    active = db.query(UserChallenge).filter(
        UserChallenge.user_id == user_id,
        UserChallenge.status == ChallengeStatus.active.value
    ).all()

    updated = []
    new_badges = []
    for uc in active:
        challenge = uc.challenge
        if challenge is None:
            continue

        uc.goals_completed += 1
        is_completed = uc.goals_completed >= challenge.target_goals
        is_expired = now > challenge_end(uc, challenge)

        if is_completed:
            uc.status = ChallengeStatus.completed.value
            uc.completed_at = now
            badge = grant_badge(db, user_id, challenge.badge_reward, challenge.name)
            if badge:
                new_badges.append(badge)
            notify(db, user_id, "Challenge completed! 🏆",
                   f"You finished \"{challenge.name}\"", "success")
            logger.info(f"🏆 Usuario {user_id} completó el reto {challenge.name}")
        elif is_expired:
            uc.status = ChallengeStatus.failed.value

        updated.append(uc)

    db.flush()
    return updated, new_badges


def expire_challenges(db: Session, now: datetime) -> int:
    """
    Marca como failed los retos activos cuya fecha fin ya pasó.
    No toca el contador. Retorna cuántos caducaron.
    """
    active = db.query(UserChallenge).filter(
        UserChallenge.status == ChallengeStatus.active.value
    ).all()

    expired = 0
    for uc in active:
        if uc.challenge and now > challenge_end(uc, uc.challenge):
            uc.status = ChallengeStatus.failed.value
            expired += 1

    db.flush()
    return expired


# =============================================================================
# ===================== CIERRE DE OBJETIVOS ===================================
# =============================================================================

def goal_progress(tasks: list[Task]) -> float:
    """Porcentaje de tareas completadas (0 si no hay tareas)"""
    if not tasks:
        return 0.0
    done = sum(1 for t in tasks if t.completed)
    return round(done / len(tasks) * 100, 1)


def settle_goal(db: Session, goal: Goal, now: datetime) -> dict:
    """
    Cierra un objetivo cuyas tareas están todas completadas.

    Antes del deadline:
      1. status → completed
      2. saldo += time_allocated (UPDATE atómico)
      3. transacción de crédito en el libro mayor
      4. racha, insignias y progreso de retos
    En el deadline o después:
      status → failed. Sin crédito ni transacción.

    El cambio de estado es condicional (WHERE status = 'ongoing'): si otra
    petición ya cerró el objetivo no se acredita dos veces.
    """
    timely = now < goal.deadline
    new_status = GoalStatus.completed.value if timely else GoalStatus.failed.value

    matched = db.query(Goal).filter(
        Goal.id == goal.id,
        Goal.status == GoalStatus.ongoing.value
    ).update(
        {Goal.status: new_status, Goal.updated_at: now},
        synchronize_session="fetch"
    )

    outcome = {
        "goal_id": goal.id,
        "status": goal.status,
        "settled": matched > 0,
        "credited": 0,
        "streak": None,
        "new_badges": [],
        "challenges": [],
    }

    if matched == 0:
        logger.info(f"Objetivo {goal.id} ya estaba cerrado ({goal.status})")
        return outcome
    record_change(db, goal)

    if not timely:
        notify(db, goal.user_id, "Goal failed",
               f"\"{goal.title}\" was finished after its deadline", "info")
        logger.info(f"⌛ Objetivo {goal.id} fuera de plazo → failed")
        db.flush()
        return outcome

    # ── Crédito ──
    increment_balance(db, goal.user_id, goal.time_allocated)
    db.add(Transaction(
        user_id=goal.user_id,
        goal_id=goal.id,
        type=TransactionType.credit.value,
        amount=goal.time_allocated,
        reason=f"Completed goal: \"{goal.title}\"",
        created_at=now,
    ))
    hours = round(goal.time_allocated / 3600)
    notify(db, goal.user_id, "Goal completed! 🎉",
           f"{hours}h added to your wallet", "success")
    logger.info(f"🎯 Objetivo {goal.id} completado: +{goal.time_allocated}s a usuario {goal.user_id}")

    # ── Progresión ──
    profile = db.get(Profile, goal.user_id)
    today = local_today(profile.timezone if profile else None, now)
    streak_result = update_streak(db, goal.user_id, today)
    challenges, challenge_badges = update_challenge_progress(db, goal.user_id, now)

    outcome.update({
        "credited": goal.time_allocated,
        "streak": streak_result["streak"],
        "new_badges": streak_result["new_badges"] + challenge_badges,
        "challenges": challenges,
    })
    db.flush()
    return outcome


# =============================================================================
# ===================== INSIGHTS ==============================================
# =============================================================================

CATEGORY_LABELS = {
    "study": "Study",
    "fitness": "Fitness",
    "career": "Career",
    "personal": "Personal",
    "creative": "Creative",
    "health": "Health",
    "finance": "Finance",
    "general": "General",
}


def _percent(part: int, total: int) -> int:
    """Porcentaje entero redondeando la mitad hacia arriba"""
    if total <= 0:
        return 0
    return int(part * 100 / total + 0.5)


def category_stats(goals: list[Goal]) -> dict:
    """Agrega los objetivos por categoría para las gráficas"""
    stats = {}
    for goal in goals:
        cat = goal.category or "general"
        entry = stats.setdefault(cat, {"count": 0, "completed": 0, "failed": 0, "time_allocated": 0})
        entry["count"] += 1
        if goal.status == GoalStatus.completed.value:
            entry["completed"] += 1
        elif goal.status == GoalStatus.failed.value:
            entry["failed"] += 1
        entry["time_allocated"] += goal.time_allocated

    total = len(goals)
    completed = sum(e["completed"] for e in stats.values())
    failed = sum(e["failed"] for e in stats.values())

    return {
        "categories": [
            {
                "category": cat,
                "label": CATEGORY_LABELS.get(cat, cat),
                **entry,
                "completion_rate": _percent(entry["completed"], entry["count"]),
            }
            for cat, entry in stats.items()
        ],
        "total_goals": total,
        "completed_goals": completed,
        "failed_goals": failed,
        "completion_rate": _percent(completed, total),
        "failure_rate": _percent(failed, total),
        "total_time_allocated": sum(e["time_allocated"] for e in stats.values()),
    }


# =============================================================================
# ===================== FOCO (POMODORO) =======================================
# =============================================================================

DEFAULT_BREAK_MINUTES = 5
DEFAULT_LONG_BREAK_MINUTES = 15
SESSIONS_BEFORE_LONG_BREAK = 4


def next_break(completed_work_sessions: int,
               break_minutes: int = DEFAULT_BREAK_MINUTES,
               long_break_minutes: int = DEFAULT_LONG_BREAK_MINUTES,
               sessions_before_long_break: int = SESSIONS_BEFORE_LONG_BREAK) -> dict:
    """Descanso largo cada N sesiones de trabajo; corto en el resto"""
    is_long = (
        completed_work_sessions > 0
        and completed_work_sessions % sessions_before_long_break == 0
    )
    return {
        "is_long_break": is_long,
        "break_minutes": long_break_minutes if is_long else break_minutes,
    }


def focus_summary(sessions: list[FocusSession], today: date) -> dict:
    """Minutos de foco de hoy y totales (solo sesiones de trabajo)"""
    work = [s for s in sessions if s.session_type == SessionType.work.value]
    today_sessions = [s for s in work if s.completed_at and s.completed_at.date() == today]
    total_minutes = sum(s.duration_minutes for s in work)
    return {
        "today_sessions": len(today_sessions),
        "today_minutes": sum(s.duration_minutes for s in today_sessions),
        "total_sessions": len(work),
        "total_minutes": total_minutes,
        "total_hours": total_minutes // 60,
        "remaining_minutes": total_minutes % 60,
    }
