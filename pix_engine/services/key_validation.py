"""
key_validation.py
-----------------
Validación, normalización, detección y enmascarado de llaves PIX.

Funciones puras, sin acceso a base de datos: las usa el directorio de
llaves al registrar y resolver, y el orquestador al mostrar el destino.

  CPF   → 11 dígitos, dos dígitos verificadores módulo 11
  CNPJ  → 14 dígitos, pesos 5..2/9..2 y 6..2/9..2
  EMAIL → ^[^\\s@]+@[^\\s@]+\\.[^\\s@]+$, se guarda en minúsculas
  PHONE → 10 a 13 dígitos, se guarda como +55...
  RANDOM→ token con forma de UUID generado por el motor
"""

import re
import uuid

from pix_engine.core.exceptions import ValidationError
from pix_engine.domain.schemas import KeyType

_EMAIL_RE   = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_DOC_RE     = re.compile(r"^[\d.\-/\s]+$")
_PHONE_RE   = re.compile(r"^\+?[\d\s()\-]+$")
_NON_DIGIT  = re.compile(r"\D")

_CNPJ_WEIGHTS_1 = (5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)
_CNPJ_WEIGHTS_2 = (6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)


def only_digits(value: str) -> str:
    return _NON_DIGIT.sub("", value)


# ─────────────────────────────────────────────────────────────────────
# Validadores
# ─────────────────────────────────────────────────────────────────────

def is_valid_cpf(value: str) -> bool:
    digits = only_digits(value)
    if len(digits) != 11 or len(set(digits)) == 1:
        return False

    nums = [int(d) for d in digits]
    for position in (9, 10):
        total = sum(nums[i] * (position + 1 - i) for i in range(position))
        check = (total * 10) % 11
        if check == 10:
            check = 0
        if check != nums[position]:
            return False
    return True


def is_valid_cnpj(value: str) -> bool:
    digits = only_digits(value)
    if len(digits) != 14 or len(set(digits)) == 1:
        return False

    nums = [int(d) for d in digits]
    for weights, position in ((_CNPJ_WEIGHTS_1, 12), (_CNPJ_WEIGHTS_2, 13)):
        remainder = sum(n * w for n, w in zip(nums, weights)) % 11
        check = 0 if remainder < 2 else 11 - remainder
        if check != nums[position]:
            return False
    return True


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value))


def is_valid_phone(value: str) -> bool:
    return 10 <= len(only_digits(value)) <= 13


def format_phone(value: str) -> str:
    digits = only_digits(value)
    if digits.startswith("55"):
        return f"+{digits}"
    return f"+55{digits}"


def generate_random_key() -> str:
    return str(uuid.uuid4())


# ─────────────────────────────────────────────────────────────────────
# Normalización al registrar
# ─────────────────────────────────────────────────────────────────────

def normalize_key(key_type: KeyType, value: str | None) -> str:
    """
    Valida el valor según su tipo y retorna la forma canónica que se
    persiste. Lanza ValidationError si el formato no es válido.
    """
    if key_type == KeyType.RANDOM:
        return generate_random_key()

    if not value or not value.strip():
        raise ValidationError("El valor de la llave es obligatorio para este tipo.")
    value = value.strip()

    if key_type == KeyType.NATIONAL_ID:
        if not is_valid_cpf(value):
            raise ValidationError("CPF inválido.", field="value")
        return only_digits(value)

    if key_type == KeyType.BUSINESS_ID:
        if not is_valid_cnpj(value):
            raise ValidationError("CNPJ inválido.", field="value")
        return only_digits(value)

    if key_type == KeyType.EMAIL:
        if not is_valid_email(value):
            raise ValidationError("Email inválido.", field="value")
        return value.lower()

    if key_type == KeyType.PHONE:
        if not is_valid_phone(value):
            raise ValidationError("Teléfono inválido.", field="value")
        return format_phone(value)

    raise ValidationError("Tipo de llave inválido.", field="type")


# ─────────────────────────────────────────────────────────────────────
# Detección al resolver un destino
# ─────────────────────────────────────────────────────────────────────

def detect_key(value: str) -> tuple[KeyType, str]:
    """
    Detecta el tipo de una llave ingresada libremente y la normaliza.
    11 dígitos se interpretan como CPF; un teléfono de 11 dígitos debe
    enviarse con prefijo '+'.
    """
    value = value.strip()

    if "@" in value:
        return KeyType.EMAIL, value.lower()

    if value.startswith("+") and _PHONE_RE.match(value):
        return KeyType.PHONE, format_phone(value)

    if _DOC_RE.match(value):
        digits = only_digits(value)
        if len(digits) == 11:
            return KeyType.NATIONAL_ID, digits
        if len(digits) == 14:
            return KeyType.BUSINESS_ID, digits
        if 10 <= len(digits) <= 13:
            return KeyType.PHONE, format_phone(digits)

    return KeyType.RANDOM, value.lower()


# ─────────────────────────────────────────────────────────────────────
# Enmascarado para mostrar
# ─────────────────────────────────────────────────────────────────────

def mask_key(key_type: KeyType | str, value: str) -> str:
    key_type = KeyType(key_type)

    if key_type == KeyType.NATIONAL_ID:
        return f"***.***.{value[-5:-2]}-**"
    if key_type == KeyType.BUSINESS_ID:
        return f"**.***.***/{value[-6:-2]}-**"
    if key_type == KeyType.EMAIL:
        local, _, domain = value.partition("@")
        return f"{local[:2]}***@{domain}"
    if key_type == KeyType.PHONE:
        return f"+55 ** *****-{value[-4:]}"
    return f"{value[:8]}...{value[-4:]}"


def mask_name(name: str | None) -> str | None:
    """'Maria da Silva' → 'Maria S***'"""
    if not name:
        return name
    parts = name.split()
    if len(parts) == 1:
        return f"{parts[0][0]}***"
    return f"{parts[0]} {parts[-1][0]}***"
