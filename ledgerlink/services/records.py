"""Record anchoring verification."""
from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from ledgerlink.integrations.ledger import LedgerClient
from ledgerlink.models.db import Record
from ledgerlink.utils import get_logger
from ledgerlink.utils.hashing import content_hash

logger = get_logger(__name__)


def verify_record(session: Session, ledger: LedgerClient, record_id: int) -> dict[str, Any]:
    """Recompute the record's hash and compare it with the memo stored on the ledger.

    ``valid`` is True only when the current content still hashes to the stored
    ``content_hash`` and the anchored transaction carries that same memo.
    """
    record = session.get(Record, record_id)
    if record is None:
        raise LookupError(f"Record {record_id} not found")

    expected = content_hash(record.content)
    result: dict[str, Any] = {
        "record_id": record.id,
        "anchored": bool(record.tx_hash),
        "tx_hash": record.tx_hash,
        "expected_memo": expected,
        "stored_hash_matches": expected == record.content_hash,
        "ledger_memo": None,
        "valid": False,
    }
    if not record.tx_hash:
        return result

    ledger_memo = ledger.fetch_memo(record.tx_hash)
    result["ledger_memo"] = ledger_memo
    result["valid"] = bool(ledger_memo) and ledger_memo == expected and result["stored_hash_matches"]
    if not result["valid"]:
        logger.warning(
            "Record verification failed",
            record_id=record.id,
            tx_hash=record.tx_hash,
            expected_memo=expected,
            ledger_memo=ledger_memo,
        )
    return result


__all__ = ["verify_record"]
