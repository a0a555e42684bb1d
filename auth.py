"""
=============================================================================
AUTH.PY — Sistema de Autenticación
=============================================================================
Gestiona:
  - Hashing de contraseñas (bcrypt)
  - Creación y verificación de tokens JWT
  - Obtener el usuario actual desde un token (la "sesión")
  - Cierre de sesión

Flujo:
  1. Usuario envía email + contraseña
  2. Si son correctos, el servidor genera un JWT
  3. El usuario envía ese JWT en cada petición (header Authorization)
  4. Sin token válido → 401 y el cliente vuelve a la pantalla de login

Cerrar sesión:
  El JWT lleva "sv" (session_version). Al hacer logout se incrementa
  session_version del usuario y todos los tokens anteriores dejan de valer.
"""

import os
from datetime import datetime, timedelta
from typing import Optional

import bcrypt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from database import get_db
from models import User

# ─────────────────────────────────────────────────────────────────────────────
# CONFIGURACIÓN
# ─────────────────────────────────────────────────────────────────────────────

SECRET_KEY = os.getenv("SECRET_KEY", "timewallet-dev-secret-key-change-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_DAYS = 30

# ─────────────────────────────────────────────────────────────────────────────
# HASHING DE CONTRASEÑAS
# ─────────────────────────────────────────────────────────────────────────────

def hash_password(password: str) -> str:
    """Convierte una contraseña en texto plano a un hash seguro"""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Compara una contraseña en texto plano con un hash almacenado"""
    return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))


# ─────────────────────────────────────────────────────────────────────────────
# TOKENS JWT
# ─────────────────────────────────────────────────────────────────────────────

def create_access_token(user: User) -> str:
    """
    Crea un token JWT para el usuario.

    El token contiene:
      - sub: el ID del usuario
      - email: para referencia
      - sv: versión de sesión (se invalida con logout)
      - exp: cuándo caduca
    """
    expire = datetime.utcnow() + timedelta(days=ACCESS_TOKEN_EXPIRE_DAYS)
    to_encode = {
        "sub": str(user.id),
        "email": user.email,
        "sv": user.session_version,
        "exp": expire
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Devuelve el contenido del token, o None si es inválido o ha expirado"""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


def user_from_token(token: str, db: Session) -> Optional[User]:
    """
    Resuelve el usuario de un token.
    None si el token no vale, el usuario no existe o la sesión se cerró.
    """
    payload = decode_token(token)
    if payload is None or payload.get("sub") is None:
        return None

    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        return None

    user = db.query(User).filter(User.id == user_id).first()
    if user is None or payload.get("sv") != user.session_version:
        return None
    return user


# ─────────────────────────────────────────────────────────────────────────────
# DEPENDENCIA: OBTENER USUARIO ACTUAL
# ─────────────────────────────────────────────────────────────────────────────

security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    Extrae el usuario del token JWT.

      @app.get("/mis-datos")
      def mis_datos(user: User = Depends(get_current_user)):
          ...
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No hay sesión activa",
            headers={"WWW-Authenticate": "Bearer"}
        )

    user = user_from_token(credentials.credentials, db)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token inválido, expirado o sesión cerrada",
            headers={"WWW-Authenticate": "Bearer"}
        )
    return user


def sign_out(user: User) -> None:
    """Invalida todos los tokens emitidos hasta ahora para el usuario"""
    user.session_version = (user.session_version or 1) + 1
