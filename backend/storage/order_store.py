# storage/order_store.py
# ============================================================================
# APOLLO LEAD SCRAPER CHECKOUT — ORDER STAGING STORE & IDEMPOTENCY LEDGER
# ============================================================================
# Two key-value stores keyed by Stripe checkout session id:
# - Staging store: one JSON record per pending order ({session_id}.json)
# - Ledger: one marker per fulfilled session ({session_id}.processed), plus
#   short-lived claim markers ({session_id}.claim) taken before the scraper
#   is triggered
#
# Both directories live on ephemeral disk and are best-effort. The interfaces
# are what the payment gateway depends on; swap the file implementations for
# Redis/Postgres without touching callers.
# ============================================================================

import fcntl
import json
import os
import re
import tempfile
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Optional

import structlog
from pydantic import ValidationError

from pipeline.errors import StorageError
from schemas.event_definitions import FulfillmentRecord, PendingOrder, utcnow

logger = structlog.get_logger().bind(component="order_store")

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_\-]{1,255}$")

CLAIMS_LOCK_FILE = ".claims.lock"


def _checked_id(session_id: str) -> str:
    """Session ids become file names; reject anything path-like."""
    if not isinstance(session_id, str) or not _SESSION_ID_RE.match(session_id):
        raise StorageError(f"Invalid session id: {session_id!r}", session_id=str(session_id)[:64])
    return session_id


def _write_atomic(path: Path, data: dict) -> None:
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=path.suffix)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def _purge(directory: Path, pattern: str, max_age_seconds: float) -> int:
    """Delete files matching `pattern` whose mtime is older than max_age_seconds."""
    if not directory.exists():
        return 0
    cutoff = time.time() - max_age_seconds
    removed = 0
    for path in directory.glob(pattern):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink(missing_ok=True)
                removed += 1
        except FileNotFoundError:
            continue
    return removed


# =============================================================================
# INTERFACES
# =============================================================================

class IOrderStagingStore(ABC):
    """Pending orders keyed by session id."""

    @abstractmethod
    async def put(self, session_id: str, order: PendingOrder) -> None:
        pass

    @abstractmethod
    async def get(self, session_id: str) -> Optional[PendingOrder]:
        pass

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        pass

    @abstractmethod
    async def purge_expired(self, max_age: timedelta) -> int:
        """Remove orders whose payment never arrived. Returns count removed."""
        pass


class IIdempotencyLedger(ABC):
    """Permanent record of fulfilled sessions, plus in-flight claims."""

    @abstractmethod
    async def is_processed(self, session_id: str) -> bool:
        pass

    @abstractmethod
    async def mark_processed(self, session_id: str) -> None:
        pass

    @abstractmethod
    async def try_claim(self, session_id: str) -> bool:
        """Take the exclusive right to fulfill a session. False if held elsewhere."""
        pass

    @abstractmethod
    async def release_claim(self, session_id: str) -> None:
        pass

    @abstractmethod
    async def purge_stale_claims(self) -> int:
        pass


# =============================================================================
# FILE IMPLEMENTATIONS
# =============================================================================

class FileOrderStagingStore(IOrderStagingStore):
    """One JSON file per pending order. Every call re-reads disk; no cache."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def _path(self, session_id: str) -> Path:
        return self.directory / f"{_checked_id(session_id)}.json"

    async def put(self, session_id: str, order: PendingOrder) -> None:
        path = self._path(session_id)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            _write_atomic(path, order.to_record())
        except OSError as e:
            logger.error("order_put_failed", session_id=session_id, error=str(e))
            raise StorageError(f"Could not stage order: {e}", session_id=session_id) from e

        logger.info("order_staged",
                    session_id=session_id,
                    url_length=len(order.destination_url))

    async def get(self, session_id: str) -> Optional[PendingOrder]:
        path = self._path(session_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("order_not_staged", session_id=session_id)
            return None
        except OSError as e:
            logger.error("order_get_failed", session_id=session_id, error=str(e))
            raise StorageError(f"Could not read staged order: {e}", session_id=session_id) from e

        try:
            return PendingOrder.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.error("order_record_corrupt", session_id=session_id, error=str(e))
            raise StorageError(f"Staged order is corrupt: {e}", session_id=session_id) from e

    async def delete(self, session_id: str) -> None:
        try:
            self._path(session_id).unlink(missing_ok=True)
        except OSError as e:
            logger.error("order_delete_failed", session_id=session_id, error=str(e))
            raise StorageError(f"Could not delete staged order: {e}", session_id=session_id) from e

    async def purge_expired(self, max_age: timedelta) -> int:
        try:
            return _purge(self.directory, "*.json", max_age.total_seconds())
        except OSError as e:
            raise StorageError(f"Could not purge staged orders: {e}") from e


class FileIdempotencyLedger(IIdempotencyLedger):
    """Marker files: {id}.processed is permanent, {id}.claim expires after claim_ttl_seconds."""

    def __init__(self, directory: str | Path, claim_ttl_seconds: int = 120):
        self.directory = Path(directory)
        self.claim_ttl_seconds = claim_ttl_seconds

    def _processed_path(self, session_id: str) -> Path:
        return self.directory / f"{_checked_id(session_id)}.processed"

    def _claim_path(self, session_id: str) -> Path:
        return self.directory / f"{_checked_id(session_id)}.claim"

    def _create_exclusive(self, path: Path, data: dict) -> bool:
        """O_EXCL create. Returns False if the file already exists."""
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f)
        return True

    async def is_processed(self, session_id: str) -> bool:
        try:
            return self._processed_path(session_id).exists()
        except OSError as e:
            raise StorageError(f"Could not read ledger: {e}", session_id=session_id) from e

    async def mark_processed(self, session_id: str) -> None:
        record = FulfillmentRecord(session_id=session_id)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            created = self._create_exclusive(
                self._processed_path(session_id),
                record.model_dump(mode="json", by_alias=True),
            )
        except OSError as e:
            logger.error("ledger_write_failed", session_id=session_id, error=str(e))
            raise StorageError(f"Could not write ledger: {e}", session_id=session_id) from e

        if created:
            logger.info("session_marked_processed", session_id=session_id)
        else:
            logger.info("session_already_marked", session_id=session_id)

    @contextmanager
    def _claims_locked(self):
        """Exclusive flock over every claim marker in the directory, across processes."""
        self.directory.mkdir(parents=True, exist_ok=True)
        with open(self.directory / CLAIMS_LOCK_FILE, "a") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)

    async def try_claim(self, session_id: str) -> bool:
        path = self._claim_path(session_id)
        data = {
            "sessionId": session_id,
            "holder": str(uuid.uuid4()),
            "claimedAt": utcnow().isoformat(),
        }
        try:
            # stat, unlink and create must not interleave with another worker's takeover
            with self._claims_locked():
                if self._create_exclusive(path, data):
                    return True

                # Held: take over only if the holder is presumed dead
                try:
                    age = time.time() - path.stat().st_mtime
                except FileNotFoundError:
                    return self._create_exclusive(path, data)
                if age < self.claim_ttl_seconds:
                    return False

                logger.warning("stale_claim_taken_over",
                               session_id=session_id,
                               age_seconds=round(age))
                path.unlink(missing_ok=True)
                return self._create_exclusive(path, data)
        except OSError as e:
            raise StorageError(f"Could not claim session: {e}", session_id=session_id) from e

    async def release_claim(self, session_id: str) -> None:
        path = self._claim_path(session_id)
        try:
            with self._claims_locked():
                path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Could not release claim: {e}", session_id=session_id) from e

    async def purge_stale_claims(self) -> int:
        if not self.directory.exists():
            return 0
        try:
            with self._claims_locked():
                return _purge(self.directory, "*.claim", self.claim_ttl_seconds)
        except OSError as e:
            raise StorageError(f"Could not purge claims: {e}") from e


# =============================================================================
# SINGLETONS
# =============================================================================

_staging_store: Optional[IOrderStagingStore] = None
_ledger: Optional[IIdempotencyLedger] = None


def get_staging_store() -> IOrderStagingStore:
    """Get or create the singleton staging store."""
    global _staging_store
    if _staging_store is None:
        from service_config import get_config
        _staging_store = FileOrderStagingStore(get_config().pending_orders_dir)
    return _staging_store


def get_ledger() -> IIdempotencyLedger:
    """Get or create the singleton idempotency ledger."""
    global _ledger
    if _ledger is None:
        from service_config import get_config
        config = get_config()
        _ledger = FileIdempotencyLedger(config.processed_sessions_dir, config.claim_ttl_seconds)
    return _ledger
