"""
Serialization and retry helpers shared by the tournament services.

Writes against one match (or one tournament's roster) are serialized twice:
- in-process by an asyncio.Lock keyed by ("match", id) / ("tournament", id)
- across processes by the optimistic version column on tournament_matches

A stale version rolls the session back and re-runs the whole operation; an
OperationalError gets one local retry before it surfaces.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from classarena.config import Settings
from classarena.exceptions import ConflictError, TournamentError

logger = logging.getLogger(__name__)

_locks: Dict[Hashable, asyncio.Lock] = {}
_lock_lock = asyncio.Lock()  # Lock for creating per-key locks


async def get_lock(key: Hashable) -> asyncio.Lock:
    """Get or create the lock for a match or tournament key."""
    async with _lock_lock:
        if key not in _locks:
            _locks[key] = asyncio.Lock()
        return _locks[key]


def match_key(match_id: int) -> Hashable:
    return ("match", match_id)


def tournament_key(tournament_id: int) -> Hashable:
    return ("tournament", tournament_id)


def release_lock(key: Hashable) -> bool:
    """
    Forget the lock for a key whose rows take no further writes (a completed
    match). A held lock is kept.
    """
    lock = _locks.get(key)
    if lock is None or lock.locked():
        return False
    del _locks[key]
    return True


def reset_locks() -> None:
    """Drop every lock. Used when a new event loop takes over (tests, CLI)."""
    global _lock_lock
    _locks.clear()
    _lock_lock = asyncio.Lock()


async def run_serialized(
    db: AsyncSession,
    operation: Callable[[], Awaitable[Any]],
    key: Optional[Hashable] = None,
    before_commit: Optional[Callable[[], Awaitable[None]]] = None,
    conflict_retries: Optional[int] = None,
    transient_retries: Optional[int] = None,
    backoff_ms: List[int] = [50, 150, 300],
) -> Any:
    """
    Run `operation` and commit, holding the lock for `key` if one is given.

    `operation` must not commit itself. `before_commit` runs after the
    operation and may raise to abort (cooperative cancellation).

    Raises:
        TournamentError: re-raised after rollback, never retried
        ConflictError: version conflicts outlasted `conflict_retries`
        OperationalError: storage kept failing after the transient retry
    """
    if conflict_retries is None:
        conflict_retries = Settings.CONFLICT_MAX_RETRIES
    if transient_retries is None:
        transient_retries = Settings.TRANSIENT_MAX_RETRIES

    lock = await get_lock(key) if key is not None else None
    conflicts = 0
    transients = 0

    while True:
        try:
            if lock is not None:
                async with lock:
                    return await _attempt(db, operation, before_commit)
            return await _attempt(db, operation, before_commit)
        except TournamentError:
            await db.rollback()
            raise
        except StaleDataError as e:
            await db.rollback()
            conflicts += 1
            if conflicts > conflict_retries:
                logger.error(f"Giving up on {key} after {conflicts} version conflicts: {e}")
                raise ConflictError(
                    "The match was modified concurrently, please retry",
                    {"key": str(key), "attempts": conflicts},
                )
            delay = backoff_ms[min(conflicts - 1, len(backoff_ms) - 1)] / 1000
            logger.warning(f"Version conflict on {key} ({conflicts}/{conflict_retries}). Waiting {delay}s")
            await asyncio.sleep(delay)
        except OperationalError as e:
            await db.rollback()
            transients += 1
            if transients > transient_retries:
                raise
            delay = backoff_ms[0] / 1000
            logger.warning(f"Transient storage error on {key}: {e}. Retrying in {delay}s")
            await asyncio.sleep(delay)
        except Exception:
            await db.rollback()
            raise


async def _attempt(
    db: AsyncSession,
    operation: Callable[[], Awaitable[Any]],
    before_commit: Optional[Callable[[], Awaitable[None]]],
) -> Any:
    result = await operation()
    await db.flush()
    if before_commit is not None:
        await before_commit()
    await db.commit()
    return result
