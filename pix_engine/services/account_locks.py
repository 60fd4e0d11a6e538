"""
account_locks.py
----------------
Serialización por cuenta dentro del proceso.

Cada mutación de saldo toma el lock de las cuentas involucradas antes
de leerlas con SELECT ... FOR UPDATE. Los locks se adquieren siempre en
orden de id para que dos transferencias cruzadas (A→B y B→A) no se
bloqueen mutuamente.

    async with locks.hold(sender_id, receiver_id):
        ...
"""

import asyncio
from collections import defaultdict
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Hashable


class KeyedLockManager:

    def __init__(self) -> None:
        self._locks: defaultdict[Hashable, asyncio.Lock] = defaultdict(asyncio.Lock)

    def lock_for(self, key: Hashable) -> asyncio.Lock:
        return self._locks[key]

    @asynccontextmanager
    async def hold(self, *keys: Hashable) -> AsyncIterator[None]:
        ordered = sorted({k for k in keys if k is not None}, key=str)
        async with AsyncExitStack() as stack:
            for key in ordered:
                await stack.enter_async_context(self._locks[key])
            yield


class AccountLockManager(KeyedLockManager):
    """Locks por account_id."""


class UserLockManager(KeyedLockManager):
    """Locks por user_id (actualización del perfil de riesgo)."""
