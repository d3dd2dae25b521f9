"""
Solana JSON-RPC ledger client.
Looks up reference-tagged transactions, mint metadata and blockhashes.
"""

import logging
from datetime import UTC, datetime
from typing import Any

import httpx
from solders.pubkey import Pubkey  # type: ignore
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID

from refpay.errors import LedgerError
from refpay.models import LedgerTransaction, TokenBalance

logger = logging.getLogger(__name__)

# Solana RPC commitment levels
FINALIZED_COMMITMENT = "finalized"  # ~32 slots confirmation (highest security)


class SolanaLedgerClient:
    """
    Read-only Solana ledger access over raw JSON-RPC.

    Every call is bounded by the client timeout and is never retried here;
    callers retry on their next scheduled attempt.
    """

    def __init__(
        self,
        rpc_url: str = "https://api.devnet.solana.com",
        commitment: str = "confirmed",
        timeout: float = 10.0,
        signature_search_limit: int = 1000,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Args:
            rpc_url: Solana RPC endpoint URL
            commitment: Commitment used when searching for reference transactions
            timeout: Per-request timeout in seconds
            signature_search_limit: Max signatures fetched per reference lookup
            client: Optional preconfigured HTTP client (tests inject a mock transport)
        """
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.signature_search_limit = signature_search_limit
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._mint_decimals: dict[str, int] = {}

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            response = await self.client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.RequestError, httpx.HTTPStatusError) as e:
            logger.error(
                "RPC request failed", extra={"method": method, "error": str(e)}
            )
            raise LedgerError(f"RPC {method} failed: {e}") from e
        except ValueError as e:
            raise LedgerError(f"RPC {method} returned invalid JSON") from e

        if "error" in data:
            logger.error("RPC error", extra={"method": method, "error": data["error"]})
            raise LedgerError(f"RPC {method} error: {data['error']}")

        return data.get("result")

    async def get_latest_blockhash(self) -> str:
        result = await self._rpc(
            "getLatestBlockhash", [{"commitment": FINALIZED_COMMITMENT}]
        )
        try:
            return result["value"]["blockhash"]
        except (KeyError, TypeError) as e:
            raise LedgerError("Malformed getLatestBlockhash response") from e

    async def find_transaction_by_reference(
        self, reference: str
    ) -> LedgerTransaction | None:
        """
        Finds the oldest successful transaction that includes ``reference``
        among its account keys.

        Returns:
            Parsed transaction, or None if the reference has not landed yet
        """
        signatures = await self._rpc(
            "getSignaturesForAddress",
            [
                reference,
                {"limit": self.signature_search_limit, "commitment": self.commitment},
            ],
        )
        if not signatures:
            return None

        # Newest first; the payment is the oldest successful one
        successful = [s for s in signatures if s.get("err") is None]
        if not successful:
            logger.info(
                "Only failed transactions reference payment",
                extra={"reference": reference, "count": len(signatures)},
            )
            return None
        signature = successful[-1]["signature"]

        tx_detail = await self._rpc(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": self.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if not tx_detail:
            # Signature indexed before the transaction body is queryable
            return None

        try:
            tx = self._parse_transaction(signature, tx_detail)
        except (KeyError, ValueError, TypeError, IndexError) as e:
            logger.error(
                "Failed to parse transaction data",
                extra={"signature": signature, "error": str(e)},
            )
            raise LedgerError(f"Malformed transaction {signature}") from e

        if reference not in tx.account_keys:
            logger.warning(
                "Signature lookup returned transaction without reference",
                extra={"reference": reference, "signature": signature},
            )
            return None
        return tx

    def _parse_transaction(
        self, signature: str, tx_detail: dict[str, Any]
    ) -> LedgerTransaction:
        meta = tx_detail.get("meta") or {}
        message = tx_detail["transaction"]["message"]

        account_keys = [
            key if isinstance(key, str) else key["pubkey"]
            for key in message["accountKeys"]
        ]
        # v0 transactions list lookup-table accounts after the static keys
        loaded = meta.get("loadedAddresses") or {}
        account_keys += loaded.get("writable", []) + loaded.get("readonly", [])

        block_time = tx_detail.get("blockTime")
        return LedgerTransaction(
            signature=signature,
            slot=int(tx_detail.get("slot", 0)),
            block_time=datetime.fromtimestamp(block_time, UTC) if block_time else None,
            account_keys=account_keys,
            pre_balances=list(meta.get("preBalances", [])),
            post_balances=list(meta.get("postBalances", [])),
            pre_token_balances=self._parse_token_balances(meta.get("preTokenBalances")),
            post_token_balances=self._parse_token_balances(
                meta.get("postTokenBalances")
            ),
            succeeded=meta.get("err") is None,
        )

    @staticmethod
    def _parse_token_balances(entries: list[dict[str, Any]] | None) -> list[TokenBalance]:
        return [
            TokenBalance(
                account_index=int(entry["accountIndex"]),
                mint=entry["mint"],
                owner=entry.get("owner"),
                amount=int(entry["uiTokenAmount"]["amount"]),
            )
            for entry in entries or []
        ]

    async def get_token_mint_decimals(self, mint: str) -> int:
        """Decimal precision of a token mint (cached; mint decimals never change)."""
        if mint in self._mint_decimals:
            return self._mint_decimals[mint]

        result = await self._rpc(
            "getAccountInfo",
            [mint, {"encoding": "jsonParsed", "commitment": self.commitment}],
        )
        value = (result or {}).get("value")
        if not value:
            raise LedgerError(f"Token mint not found: {mint}")
        try:
            info = value["data"]["parsed"]["info"]
            if not info.get("isInitialized", True):
                raise LedgerError(f"Token mint not initialized: {mint}")
            decimals = int(info["decimals"])
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerError(f"Account is not a token mint: {mint}") from e

        self._mint_decimals[mint] = decimals
        return decimals

    async def resolve_associated_account(self, owner: str, mint: str) -> str:
        """
        Derives the Associated Token Account (ATA) address for a given owner and mint.

        Formula:
            find_program_address([owner, TOKEN_PROGRAM_ID, mint], ASSOCIATED_TOKEN_PROGRAM_ID)
        """
        try:
            seeds = [
                bytes(Pubkey.from_string(owner)),
                bytes(TOKEN_PROGRAM_ID),
                bytes(Pubkey.from_string(mint)),
            ]
        except ValueError as e:
            raise LedgerError(f"Invalid owner or mint address: {e}") from e
        ata, _ = Pubkey.find_program_address(seeds, ASSOCIATED_TOKEN_PROGRAM_ID)
        return str(ata)

    async def close(self) -> None:
        """Closes the HTTP client connection."""
        await self.client.aclose()
