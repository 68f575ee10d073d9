import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy.orm import Session

from cache import DRAFT_TTL, CacheService
from errors import DraftTooLarge, NotFoundError
from models import Transaction
from schemas import BulkTransactionPatch
from services import Invalidator, TransactionService, TransactionState, get_live, utcnow

if TYPE_CHECKING:  # pragma: no cover
    from geo_index import GeoIndexManager

logger = logging.getLogger(__name__)

# Single draft per installation.
DRAFT_KEY = "transactions:bulk:draft"
MAX_DRAFT_UPDATES = 500


class BulkDraftService:
    def __init__(
        self,
        session: Session,
        cache: CacheService,
        invalidator: Optional[Invalidator] = None,
        geo: Optional["GeoIndexManager"] = None,
    ) -> None:
        self.session = session
        self.cache = cache
        self.invalidator = invalidator
        self.geo = geo

    def _expires_at(self, now: datetime) -> datetime:
        remaining = self.cache.ttl(DRAFT_KEY)
        return now + (remaining if remaining is not None else DRAFT_TTL)

    def save_draft(self, updates: list[BulkTransactionPatch]) -> dict[str, Any]:
        if len(updates) > MAX_DRAFT_UPDATES:
            raise DraftTooLarge(len(updates), MAX_DRAFT_UPDATES)

        now = utcnow()
        created_at = now.isoformat()
        previous = self.cache.get_json(DRAFT_KEY)
        if previous:
            created_at = previous.get("metadata", {}).get("created_at", created_at)

        metadata = {
            "created_at": created_at,
            "updated_at": now.isoformat(),
            "count": len(updates),
        }
        blob = {
            "updates": [
                update.model_dump(mode="json", exclude_unset=True) for update in updates
            ],
            "metadata": metadata,
        }
        self.cache.set_json(DRAFT_KEY, blob, DRAFT_TTL)
        logger.info(f"bulk_draft_saved: count={len(updates)}")
        return {**metadata, "expires_at": (now + DRAFT_TTL).isoformat()}

    def get_draft(self) -> dict[str, Any]:
        blob = self.cache.get_json(DRAFT_KEY)
        if blob is None:
            raise NotFoundError("Draft")
        blob["expires_at"] = self._expires_at(utcnow()).isoformat()
        return blob

    def commit_draft(self) -> dict[str, Any]:
        blob = self.cache.get_json(DRAFT_KEY)
        if blob is None:
            raise NotFoundError("Draft")
        patches = [BulkTransactionPatch.model_validate(item) for item in blob["updates"]]

        engine = TransactionService(self.session, geo=self.geo)
        started = time.perf_counter()
        states: list[TransactionState] = []
        updated: list[Transaction] = []
        try:
            for patch in patches:
                data = patch.model_dump(exclude_unset=True)
                transaction_id = data.pop("id")
                if not data:
                    get_live(self.session, Transaction, transaction_id, "Transaction")
                    continue
                txn, before, after = engine.update_in_session(transaction_id, data)
                states.extend([before, after])
                updated.append(txn)
            self.session.commit()
        except Exception as exc:
            self.session.rollback()
            logger.warning(f"bulk_draft_commit_failed: count={len(patches)} error={exc}")
            raise

        duration_ms = int((time.perf_counter() - started) * 1000)
        engine.invalidator = self.invalidator
        engine.after_commit(states)
        for txn in updated:
            engine.sync_geo(txn)
        self.cache.delete(DRAFT_KEY)
        logger.info(
            f"bulk_draft_committed: count={len(updated)} duration_ms={duration_ms}"
        )
        return {
            "success_count": len(updated),
            "updated_ids": [txn.id for txn in updated],
            "duration_ms": duration_ms,
        }

    def delete_draft(self) -> None:
        if self.cache.delete(DRAFT_KEY) == 0:
            raise NotFoundError("Draft")
