"""
=============================================================================
SCHEMAS.PY — Esquemas de Validación (Pydantic)
=============================================================================
Models (SQLAlchemy) → definen las TABLAS de la BD
Schemas (Pydantic)  → definen qué DATOS acepta/devuelve la API

Convención de nombres:
  XxxCreate   → para crear algo nuevo (POST)
  XxxUpdate   → para actualizar algo (PATCH)
  XxxResponse → lo que devuelve la API (GET)

Todas las fechas que devuelve la API son UTC.
"""

from pydantic import BaseModel, Field, EmailStr, field_validator, model_validator
from datetime import date, datetime, timezone
from typing import Optional

from models import GoalCategory

# Un año: time_allocated (segundos) cabe de sobra en un INTEGER de 32 bits
MAX_GOAL_HOURS = 24 * 365


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """La BD guarda UTC sin zona: convertir si el cliente envía offset"""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# =============================================================================
# ===================== AUTH ==================================================
# =============================================================================

class UserRegister(BaseModel):
    """Datos para registrar un usuario nuevo"""
    email: EmailStr
    password: str = Field(min_length=6, description="Mínimo 6 caracteres")
    username: Optional[str] = Field(default=None, max_length=100)

class UserLogin(BaseModel):
    email: EmailStr
    password: str

class TokenResponse(BaseModel):
    """Respuesta con el token JWT"""
    access_token: str
    token_type: str = "bearer"
    user_id: int

class UserResponse(BaseModel):
    id: int
    email: str
    created_at: datetime
    model_config = {"from_attributes": True}


# =============================================================================
# ===================== PROFILE & WALLET ======================================
# =============================================================================

class ProfileUpdate(BaseModel):
    username: Optional[str] = Field(default=None, max_length=100)
    age: Optional[int] = Field(default=None, ge=1, le=130)
    gender: Optional[str] = None
    education_standard: Optional[str] = None
    interested_subjects: Optional[list[str]] = None
    timezone: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    @field_validator("username")
    @classmethod
    def username_not_blank(cls, value):
        if value is not None:
            value = value.strip()
            if not value:
                raise ValueError("El nombre de usuario no puede estar vacío")
        return value

    @field_validator("interested_subjects")
    @classmethod
    def dedupe_subjects(cls, value):
        # Sin vacíos ni duplicados (ignorando mayúsculas); lista vacía → NULL
        if value is None:
            return None
        seen = set()
        subjects = []
        for subject in value:
            subject = subject.strip()
            if subject and subject.lower() not in seen:
                seen.add(subject.lower())
                subjects.append(subject)
        return subjects or None

class ProfileResponse(BaseModel):
    id: int
    username: Optional[str]
    age: Optional[int]
    gender: Optional[str]
    education_standard: Optional[str]
    interested_subjects: Optional[list[str]]
    balance: int
    timezone: str
    telegram_chat_id: Optional[str]
    created_at: datetime
    updated_at: datetime
    model_config = {"from_attributes": True}

class WalletResponse(BaseModel):
    balance: int          # segundos con signo
    formatted: str        # "-1h 02m 03s"
    hours: int
    minutes: int
    seconds: int
    is_negative: bool


# =============================================================================
# ===================== GOALS & TASKS =========================================
# =============================================================================

class TaskCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None

class TaskResponse(BaseModel):
    id: int
    goal_id: int
    title: str
    description: Optional[str]
    position: int
    completed: bool
    completed_at: Optional[datetime]
    model_config = {"from_attributes": True}

class GoalCreate(BaseModel):
    """
    El plazo se indica en horas o en días (uno de los dos), como mucho un año.
    deadline = ahora + plazo; time_allocated = plazo en segundos.
    Necesita al menos una tarea: el objetivo se cierra al completarlas todas.
    """
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    category: GoalCategory = GoalCategory.general
    duration: int = Field(gt=0, le=MAX_GOAL_HOURS, description="Plazo en la unidad indicada")
    unit: str = Field(default="hours", pattern=r"^(hours|days)$")
    tasks: list[TaskCreate] = Field(min_length=1)

    @property
    def duration_hours(self) -> int:
        return self.duration * 24 if self.unit == "days" else self.duration

    @model_validator(mode="after")
    def duration_within_a_year(self):
        if self.duration_hours > MAX_GOAL_HOURS:
            raise ValueError(f"El plazo no puede superar {MAX_GOAL_HOURS} horas (365 días)")
        return self

class GoalResponse(BaseModel):
    id: int
    title: str
    description: Optional[str]
    category: str
    deadline: datetime
    time_allocated: int
    status: str
    last_progress_update: Optional[datetime]
    created_at: datetime
    updated_at: Optional[datetime]
    model_config = {"from_attributes": True}

class GoalDetail(GoalResponse):
    tasks: list[TaskResponse] = []
    progress: float = 0.0
    is_overdue: bool = False


# =============================================================================
# ===================== TRANSACTIONS ==========================================
# =============================================================================

class TransactionResponse(BaseModel):
    id: int
    goal_id: Optional[int]
    amount: int
    reason: str
    type: str
    created_at: datetime
    model_config = {"from_attributes": True}


# =============================================================================
# ===================== STREAKS & BADGES ======================================
# =============================================================================

class StreakResponse(BaseModel):
    current_streak: int
    longest_streak: int
    last_streak_date: Optional[date]
    total_goals_completed: int
    model_config = {"from_attributes": True}

class BadgeResponse(BaseModel):
    id: int
    badge_type: str
    badge_name: str
    earned_at: datetime
    model_config = {"from_attributes": True}


# =============================================================================
# ===================== CHALLENGES ============================================
# =============================================================================

class ChallengeResponse(BaseModel):
    id: int
    name: str
    description: str
    duration_days: int
    target_goals: int
    badge_reward: str
    model_config = {"from_attributes": True}

class UserChallengeResponse(BaseModel):
    id: int
    challenge_id: int
    started_at: datetime
    completed_at: Optional[datetime]
    goals_completed: int
    status: str
    model_config = {"from_attributes": True}

class UserChallengeDetail(UserChallengeResponse):
    challenge: Optional[ChallengeResponse] = None
    progress: float = 0.0
    days_remaining: int = 0

class MyChallenges(BaseModel):
    active: list[UserChallengeDetail]
    completed: list[UserChallengeDetail]


# =============================================================================
# ===================== RESULTADO DE COMPLETAR TAREAS =========================
# =============================================================================

class GoalOutcome(BaseModel):
    """Lo que ocurrió al cerrar el objetivo (si se cerró)"""
    goal_id: int
    status: str
    settled: bool
    credited: int = 0
    streak: Optional[StreakResponse] = None
    new_badges: list[BadgeResponse] = []
    challenges: list[UserChallengeResponse] = []
    model_config = {"from_attributes": True}

class TaskToggleResult(BaseModel):
    task: TaskResponse
    goal_progress: float
    outcome: Optional[GoalOutcome] = None


# =============================================================================
# ===================== NOTIFICATIONS =========================================
# =============================================================================

class NotificationCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1)
    type: str = "info"

class NotificationResponse(BaseModel):
    id: int
    title: str
    message: str
    type: str
    is_read: bool
    created_at: datetime
    model_config = {"from_attributes": True}

class NotificationList(BaseModel):
    notifications: list[NotificationResponse]
    unread_count: int


# =============================================================================
# ===================== REMINDERS =============================================
# =============================================================================

class ReminderCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    reminder_date: datetime

    @field_validator("reminder_date")
    @classmethod
    def reminder_date_utc(cls, value):
        return _to_naive_utc(value)

class ReminderUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    reminder_date: Optional[datetime] = None
    is_completed: Optional[bool] = None

    @field_validator("reminder_date")
    @classmethod
    def reminder_date_utc(cls, value):
        return _to_naive_utc(value)

class ReminderResponse(BaseModel):
    id: int
    title: str
    description: Optional[str]
    reminder_date: datetime
    is_completed: bool
    notified_at: Optional[datetime]
    created_at: datetime
    model_config = {"from_attributes": True}


# =============================================================================
# ===================== FOCUS =================================================
# =============================================================================

class FocusSessionCreate(BaseModel):
    duration_minutes: int = Field(gt=0, le=600)
    session_type: str = Field(default="work", pattern=r"^(work|break)$")
    goal_id: Optional[int] = None
    # Ajustes del temporizador para calcular el siguiente descanso
    break_minutes: int = Field(default=5, gt=0)
    long_break_minutes: int = Field(default=15, gt=0)
    sessions_before_long_break: int = Field(default=4, gt=0)

class FocusSessionResponse(BaseModel):
    id: int
    goal_id: Optional[int]
    duration_minutes: int
    session_type: str
    completed_at: datetime
    model_config = {"from_attributes": True}

class NextBreak(BaseModel):
    is_long_break: bool
    break_minutes: int

class FocusSessionResult(BaseModel):
    session: FocusSessionResponse
    next_break: Optional[NextBreak] = None

class FocusStats(BaseModel):
    today_sessions: int
    today_minutes: int
    total_sessions: int
    total_minutes: int
    total_hours: int
    remaining_minutes: int
    sessions: list[FocusSessionResponse]


# =============================================================================
# ===================== NOTEPAD ===============================================
# =============================================================================

class NotepadEntryCreate(BaseModel):
    content: str

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value):
        value = value.strip()
        if not value:
            raise ValueError("Escribe algo primero")
        return value

class NotepadEntryResponse(BaseModel):
    id: int
    content: str
    created_at: datetime
    updated_at: datetime
    model_config = {"from_attributes": True}


# =============================================================================
# ===================== INSIGHTS ==============================================
# =============================================================================

class CategoryStat(BaseModel):
    category: str
    label: str
    count: int
    completed: int
    failed: int
    time_allocated: int
    completion_rate: int

class InsightsResponse(BaseModel):
    categories: list[CategoryStat]
    total_goals: int
    completed_goals: int
    failed_goals: int
    completion_rate: int
    failure_rate: int
    total_time_allocated: int
