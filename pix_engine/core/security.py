import json
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

import jwt

from pix_engine.core.config import settings
from pix_engine.core.exceptions import InvalidTokenError
from pix_engine.domain.schemas import CurrentUser

JWT_ALGORITHM = "HS256"


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Tipo no serializable: {type(value).__name__}")


def canonical_json(data: Any) -> bytes:
    """
    Serialización canónica (sort_keys, sin espacios) para que hashes y
    firmas sean deterministas sin importar el orden de inserción.
    """
    return json.dumps(
        data,
        sort_keys    = True,
        separators   = (",", ":"),
        default      = _json_default,
        ensure_ascii = False,
    ).encode()


def to_json_safe(data: Any) -> Any:
    """Normaliza Decimal/UUID/datetime a tipos nativos de JSON."""
    return json.loads(canonical_json(data))


def verify_access_token(token: str) -> CurrentUser:
    """
    Valida el JWT emitido por el servicio de sesiones y retorna la identidad
    (claim `sub` como UUID, claim `role` opcional).
    Este motor solo verifica tokens; la emisión vive fuera del servicio.
    """
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise InvalidTokenError("Token expirado. Inicia sesión nuevamente.")
    except jwt.InvalidTokenError:
        raise InvalidTokenError()

    subject = payload.get("sub")
    if not subject:
        raise InvalidTokenError("El token no contiene identificación de usuario.")
    try:
        user_id = UUID(str(subject))
    except ValueError:
        raise InvalidTokenError("El identificador de usuario del token no es válido.")
    return CurrentUser(user_id=user_id, role=payload.get("role", "user"))
