"""Public ledger client used to anchor record hashes.

Anchors are Stellar transactions carrying the record's SHA-256 as a hash memo
and a single no-op ``bump_sequence`` operation, so the only on-chain effect is
the memo itself.
"""
from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Optional, Protocol

from stellar_sdk import Keypair, Server, TransactionBuilder
from stellar_sdk.client.requests_client import RequestsClient
from stellar_sdk.exceptions import NotFoundError

from ledgerlink.config import LEDGER_SETTINGS
from ledgerlink.exceptions import ConfigurationError
from ledgerlink.utils import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class AnchorReceipt:
    tx_hash: str
    memo: str
    ledger: Optional[int] = None


class LedgerClient(Protocol):
    def submit_anchor(self, memo_hex: str) -> AnchorReceipt: ...

    def find_transaction_by_memo(self, memo_hex: str) -> Optional[AnchorReceipt]: ...

    def fetch_memo(self, tx_hash: str) -> Optional[str]: ...


def memo_to_base64(memo_hex: str) -> str:
    return base64.b64encode(bytes.fromhex(memo_hex)).decode("ascii")


def memo_from_base64(memo_b64: str) -> str:
    return base64.b64decode(memo_b64).hex()


class StellarLedgerClient:
    """LedgerClient backed by a Horizon server."""

    def __init__(
        self,
        *,
        secret_key: str | None = None,
        horizon_url: str | None = None,
        network_passphrase: str | None = None,
        request_timeout: float | None = None,
        memo_lookup_limit: int | None = None,
    ):
        secret_key = secret_key or LEDGER_SETTINGS["secret_key"]  # type: ignore[assignment]
        if not secret_key:
            raise ConfigurationError("STELLAR_SECRET_KEY is required for ledger anchoring")
        timeout = float(request_timeout or LEDGER_SETTINGS["request_timeout_seconds"])  # type: ignore[arg-type]
        self.keypair = Keypair.from_secret(secret_key)
        self.network_passphrase = str(network_passphrase or LEDGER_SETTINGS["network_passphrase"])
        self.memo_lookup_limit = int(memo_lookup_limit or LEDGER_SETTINGS["memo_lookup_limit"])  # type: ignore[arg-type]
        client = RequestsClient(num_retries=0, request_timeout=timeout, post_timeout=timeout)
        self.server = Server(horizon_url=str(horizon_url or LEDGER_SETTINGS["horizon_url"]), client=client)

    @property
    def public_key(self) -> str:
        return self.keypair.public_key

    def submit_anchor(self, memo_hex: str) -> AnchorReceipt:
        account = self.server.load_account(self.public_key)
        transaction = (
            TransactionBuilder(
                source_account=account,
                network_passphrase=self.network_passphrase,
                base_fee=self.server.fetch_base_fee(),
            )
            .add_hash_memo(bytes.fromhex(memo_hex))
            .append_bump_sequence_op(bump_to=0)
            .set_timeout(30)
            .build()
        )
        transaction.sign(self.keypair)
        response = self.server.submit_transaction(transaction)
        receipt = AnchorReceipt(tx_hash=response["hash"], memo=memo_hex, ledger=response.get("ledger"))
        logger.info("Ledger anchor submitted", tx_hash=receipt.tx_hash, memo=memo_hex, ledger=receipt.ledger)
        return receipt

    def find_transaction_by_memo(self, memo_hex: str) -> Optional[AnchorReceipt]:
        """Look for an earlier anchor with the same memo among recent account transactions."""
        wanted = memo_to_base64(memo_hex)
        response = (
            self.server.transactions()
            .for_account(self.public_key)
            .order(desc=True)
            .limit(self.memo_lookup_limit)
            .call()
        )
        for record in response.get("_embedded", {}).get("records", []):
            if record.get("memo_type") == "hash" and record.get("memo") == wanted and record.get("successful", True):
                return AnchorReceipt(tx_hash=record["hash"], memo=memo_hex, ledger=record.get("ledger"))
        return None

    def fetch_memo(self, tx_hash: str) -> Optional[str]:
        try:
            record = self.server.transactions().transaction(tx_hash).call()
        except NotFoundError:
            return None
        if record.get("memo_type") != "hash" or not record.get("memo"):
            return None
        return memo_from_base64(record["memo"])


__all__ = ["AnchorReceipt", "LedgerClient", "StellarLedgerClient", "memo_to_base64", "memo_from_base64"]
