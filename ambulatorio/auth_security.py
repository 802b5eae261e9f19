from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from .config import Settings, get_settings

PACIENTE = "PACIENTE"
MEDICO = "MEDICO"
ADMINISTRADOR = "ADMINISTRADOR"

_ROLE_ALIASES = {
    "DOCTOR": MEDICO,
    "ADMIN": ADMINISTRADOR,
    "PATIENT": PACIENTE,
}


@dataclass(frozen=True)
class Actor:
    """Identità già verificata che accompagna ogni richiesta."""
    id: int
    role: str

    def has_role(self, *roles: str) -> bool:
        return self.role in {normalize_role(r) for r in roles}


def normalize_role(value: object) -> str:
    """
    Normalizza il ruolo per evitare disallineamenti
    (maiuscole, accenti, alias inglesi: doctor -> MEDICO, admin -> ADMINISTRADOR).
    """
    raw = unicodedata.normalize("NFD", str(value or "").upper())
    role = "".join(c for c in raw if not unicodedata.combining(c)).strip()
    return _ROLE_ALIASES.get(role, role)


def create_access_token(
    subject: int | str,
    role: str,
    extra: dict[str, Any] | None = None,
    settings: Settings | None = None,
) -> str:
    """
    subject: id dell'utente (paziente o medico).
    Usa datetime timezone-aware per evitare offset/bug su timestamp.
    """
    settings = settings or get_settings()
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.jwt_expire_minutes)

    payload: dict[str, Any] = {
        "sub": str(subject),
        "role": normalize_role(role),
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    if extra:
        payload.update(extra)

    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings | None = None) -> dict[str, Any]:
    settings = settings or get_settings()
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])


def actor_from_token(token: str, settings: Settings | None = None) -> Actor | None:
    try:
        payload = decode_token(token, settings)
        return Actor(id=int(payload["sub"]), role=normalize_role(payload.get("role")))
    except (JWTError, KeyError, TypeError, ValueError):
        return None
