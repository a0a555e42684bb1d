"""
=============================================================================
MODELS.PY — Todos los Modelos (Tablas) de la Base de Datos
=============================================================================
Cada clase aquí = una tabla en la base de datos.

RELACIONES:
  USER (cuenta de acceso)
  ├── profile (1-1) ──→ saldo de tiempo, datos demográficos
  ├── streak (1-1)  ──→ racha actual / más larga
  ├── goals[] ──→ tasks[]
  ├── transactions[] (libro mayor, solo se añade)
  ├── badges[]
  ├── user_challenges[] ──→ challenge (catálogo compartido)
  ├── notifications[]
  ├── reminders[]
  ├── focus_sessions[]
  └── notepad_entries[]

El saldo se mide en SEGUNDOS y puede ser negativo.
"""

from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Boolean, Text, Date,
    DateTime, ForeignKey, JSON, UniqueConstraint
)
from sqlalchemy.orm import relationship
from database import Base
import enum


# =============================================================================
# ===================== ENUMS (Tipos predefinidos) ============================
# =============================================================================

class GoalStatus(str, enum.Enum):
    """Ciclo de vida de un objetivo: ongoing → completed | failed"""
    ongoing = "ongoing"
    completed = "completed"
    failed = "failed"

class ChallengeStatus(str, enum.Enum):
    """Mismo ciclo que los objetivos: active → completed | failed"""
    active = "active"
    completed = "completed"
    failed = "failed"

class TransactionType(str, enum.Enum):
    credit = "credit"   # tiempo ganado
    debit = "debit"     # tiempo gastado

class SessionType(str, enum.Enum):
    """Tipo de sesión del temporizador de foco"""
    work = "work"
    break_ = "break"

class GoalCategory(str, enum.Enum):
    study = "study"
    fitness = "fitness"
    career = "career"
    personal = "personal"
    creative = "creative"
    health = "health"
    finance = "finance"
    general = "general"


# =============================================================================
# ===================== TABLA 1: USERS ========================================
# =============================================================================
# Cuenta de acceso: email + contraseña. El perfil vive en su propia tabla.

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)

    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)

    session_version = Column(Integer, default=1, nullable=False)
    # session_version → se incrementa al cerrar sesión; invalida todos los
    # tokens emitidos con la versión anterior

    created_at = Column(DateTime, default=datetime.utcnow)

    profile = relationship("Profile", back_populates="user", uselist=False,
                           cascade="all, delete-orphan")
    streak = relationship("UserStreak", back_populates="user", uselist=False,
                          cascade="all, delete-orphan")
    goals = relationship("Goal", back_populates="user", cascade="all, delete-orphan")
    transactions = relationship("Transaction", back_populates="user", cascade="all, delete-orphan")
    badges = relationship("Badge", back_populates="user", cascade="all, delete-orphan")
    user_challenges = relationship("UserChallenge", back_populates="user", cascade="all, delete-orphan")
    notifications = relationship("Notification", back_populates="user", cascade="all, delete-orphan")
    reminders = relationship("Reminder", back_populates="user", cascade="all, delete-orphan")
    focus_sessions = relationship("FocusSession", back_populates="user", cascade="all, delete-orphan")
    notepad_entries = relationship("NotepadEntry", back_populates="user", cascade="all, delete-orphan")


# =============================================================================
# ===================== TABLA 2: PROFILES =====================================
# =============================================================================
# Un perfil por usuario. id = users.id

class Profile(Base):
    __tablename__ = "profiles"

    id = Column(Integer, ForeignKey("users.id"), primary_key=True)

    # ── Datos del perfil ──
    username = Column(String(100), nullable=True)
    age = Column(Integer, nullable=True)
    gender = Column(String(30), nullable=True)
    education_standard = Column(String(50), nullable=True)
    interested_subjects = Column(JSON, nullable=True)
    # interested_subjects → ["Math", "Physics"] o NULL si no hay ninguno

    # ── Cartera de tiempo ──
    balance = Column(Integer, default=0, nullable=False)
    # balance → segundos; SOLO se modifica con increment_balance (UPDATE atómico)

    # ── Configuración ──
    timezone = Column(String(50), default="UTC")
    # timezone → define el "día de hoy" del usuario para las rachas
    telegram_chat_id = Column(String(50), nullable=True)
    # telegram_chat_id → si está, los recordatorios también llegan por Telegram

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="profile")


# =============================================================================
# ===================== TABLA 3: GOALS ========================================
# =============================================================================

class Goal(Base):
    __tablename__ = "goals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(30), default=GoalCategory.general.value)

    deadline = Column(DateTime, nullable=False)
    # deadline → UTC; completar ANTES de esta hora acredita el tiempo
    time_allocated = Column(Integer, nullable=False)
    # time_allocated → presupuesto en segundos (se acredita al completar)

    status = Column(String(20), default=GoalStatus.ongoing.value, nullable=False)
    # status → ongoing, completed, failed (los dos últimos son terminales)
    last_progress_update = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="goals")
    tasks = relationship("Task", back_populates="goal", cascade="all, delete-orphan",
                         order_by="Task.position")


# =============================================================================
# ===================== TABLA 4: TASKS ========================================
# =============================================================================
# Pasos de un objetivo. Se borran con el objetivo.

class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    goal_id = Column(Integer, ForeignKey("goals.id"), nullable=False, index=True)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    position = Column(Integer, default=0)

    completed = Column(Boolean, default=False)
    completed_at = Column(DateTime, nullable=True)

    goal = relationship("Goal", back_populates="tasks")


# =============================================================================
# ===================== TABLA 5: TRANSACTIONS =================================
# =============================================================================
# Libro mayor de la cartera. La aplicación nunca modifica ni borra filas.

class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    goal_id = Column(Integer, ForeignKey("goals.id", ondelete="SET NULL"), nullable=True)
    # goal_id → se queda en NULL si el objetivo se borra; la entrada permanece

    amount = Column(Integer, nullable=False)
    # amount → segundos con signo (positivo = crédito)
    reason = Column(String(300), nullable=False)
    type = Column(String(20), default=TransactionType.credit.value, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="transactions")


# =============================================================================
# ===================== TABLA 6: USER_STREAKS =================================
# =============================================================================

class UserStreak(Base):
    __tablename__ = "user_streaks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)

    current_streak = Column(Integer, default=0, nullable=False)
    longest_streak = Column(Integer, default=0, nullable=False)
    last_streak_date = Column(Date, nullable=True)
    # last_streak_date → último día (local del usuario) con acción válida
    total_goals_completed = Column(Integer, default=0, nullable=False)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="streak")


# =============================================================================
# ===================== TABLA 7: USER_BADGES ==================================
# =============================================================================

class Badge(Base):
    __tablename__ = "user_badges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    badge_type = Column(String(50), nullable=False)
    # badge_type → "streak_7", "goals_10"... o la recompensa de un reto
    badge_name = Column(String(100), nullable=False)

    earned_at = Column(DateTime, default=datetime.utcnow)

    # ── Restricción única: una insignia de cada tipo por usuario ──
    __table_args__ = (
        UniqueConstraint('user_id', 'badge_type', name='uq_user_badge_type'),
    )

    user = relationship("User", back_populates="badges")


# =============================================================================
# ===================== TABLA 8: CHALLENGES ===================================
# =============================================================================
# Catálogo de retos (los define el sistema, no el usuario)

class Challenge(Base):
    __tablename__ = "challenges"

    id = Column(Integer, primary_key=True, autoincrement=True)

    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text, nullable=False)
    duration_days = Column(Integer, nullable=False)
    target_goals = Column(Integer, nullable=False)
    badge_reward = Column(String(50), nullable=False)
    # badge_reward → badge_type que se concede al completar el reto


# =============================================================================
# ===================== TABLA 9: USER_CHALLENGES ==============================
# =============================================================================

class UserChallenge(Base):
    __tablename__ = "user_challenges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    challenge_id = Column(Integer, ForeignKey("challenges.id"), nullable=False)

    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    goals_completed = Column(Integer, default=0, nullable=False)
    status = Column(String(20), default=ChallengeStatus.active.value, nullable=False)

    user = relationship("User", back_populates="user_challenges")
    challenge = relationship("Challenge")


# =============================================================================
# ===================== TABLA 10: NOTIFICATIONS ===============================
# =============================================================================

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(30), default="info")
    # type → "info", "success", "badge", "reminder"
    is_read = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="notifications")


# =============================================================================
# ===================== TABLA 11: REMINDERS ===================================
# =============================================================================

class Reminder(Base):
    __tablename__ = "reminders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    reminder_date = Column(DateTime, nullable=False)
    # reminder_date → momento objetivo (UTC)
    is_completed = Column(Boolean, default=False)

    notified_at = Column(DateTime, nullable=True)
    # notified_at → cuándo lo entregó el scheduler (NULL = pendiente de aviso)

    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="reminders")


# =============================================================================
# ===================== TABLA 12: FOCUS_SESSIONS ==============================
# =============================================================================

class FocusSession(Base):
    __tablename__ = "focus_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    goal_id = Column(Integer, ForeignKey("goals.id", ondelete="SET NULL"), nullable=True)

    duration_minutes = Column(Integer, nullable=False)
    session_type = Column(String(10), default=SessionType.work.value)
    # session_type → "work" o "break"

    completed_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="focus_sessions")


# =============================================================================
# ===================== TABLA 13: NOTEPAD_ENTRIES =============================
# =============================================================================

class NotepadEntry(Base):
    __tablename__ = "notepad_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    content = Column(Text, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="notepad_entries")
