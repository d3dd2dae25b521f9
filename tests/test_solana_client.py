import json
from datetime import UTC, datetime

import httpx
import pytest
from solders.pubkey import Pubkey  # type: ignore
from spl.token.instructions import get_associated_token_address

from conftest import TOKEN_MINT, new_address
from refpay.crypto.solana_client import SolanaLedgerClient
from refpay.errors import LedgerError

RPC_URL = "https://rpc.test"


class RpcStub:
    """Answers JSON-RPC calls from a method -> result (or error) table."""

    def __init__(self, results: dict):
        self.results = results
        self.calls: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.calls.append(body)
        result = self.results[body["method"]]
        if isinstance(result, httpx.Response):
            return result
        if isinstance(result, dict) and "rpc_error" in result:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": result["rpc_error"]})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})

    def methods(self) -> list[str]:
        return [call["method"] for call in self.calls]


def make_client(stub: RpcStub) -> SolanaLedgerClient:
    return SolanaLedgerClient(
        RPC_URL, client=httpx.AsyncClient(transport=httpx.MockTransport(stub))
    )


def parsed_transaction(reference: str, recipient: str, payer: str) -> dict:
    return {
        "slot": 250_000_000,
        "blockTime": 1_768_478_400,
        "meta": {
            "err": None,
            "preBalances": [2_000_000_000, 0, 1, 0],
            "postBalances": [1_945_545_000, 54_450_000, 1, 0],
            "preTokenBalances": [],
            "postTokenBalances": [
                {
                    "accountIndex": 1,
                    "mint": TOKEN_MINT,
                    "owner": recipient,
                    "uiTokenAmount": {"amount": "5445000", "decimals": 6},
                }
            ],
        },
        "transaction": {
            "message": {
                "accountKeys": [
                    {"pubkey": payer, "signer": True, "writable": True},
                    {"pubkey": recipient, "signer": False, "writable": True},
                    {"pubkey": "11111111111111111111111111111111", "signer": False, "writable": False},
                    {"pubkey": reference, "signer": False, "writable": False},
                ]
            }
        },
    }


@pytest.mark.asyncio
async def test_latest_blockhash_uses_finalized_commitment():
    stub = RpcStub({"getLatestBlockhash": {"value": {"blockhash": "EkSnNWid2cvwEVnVx9aBqawnmiCNiDgp3gUdkDPTKN1N", "lastValidBlockHeight": 1}}})
    client = make_client(stub)

    assert await client.get_latest_blockhash() == "EkSnNWid2cvwEVnVx9aBqawnmiCNiDgp3gUdkDPTKN1N"
    assert stub.calls[0]["params"] == [{"commitment": "finalized"}]
    await client.close()


@pytest.mark.asyncio
async def test_find_transaction_by_reference_parses_oldest_success():
    reference, recipient, payer = new_address(), new_address(), new_address()
    stub = RpcStub(
        {
            "getSignaturesForAddress": [
                {"signature": "newer", "err": None},
                {"signature": "oldest-ok", "err": None},
                {"signature": "failed", "err": {"InstructionError": [0, "Custom"]}},
            ],
            "getTransaction": parsed_transaction(reference, recipient, payer),
        }
    )
    client = make_client(stub)

    tx = await client.find_transaction_by_reference(reference)

    assert tx.signature == "oldest-ok"
    assert stub.calls[1]["params"][0] == "oldest-ok"
    assert stub.calls[1]["params"][1]["encoding"] == "jsonParsed"
    assert tx.succeeded
    assert tx.block_time == datetime.fromtimestamp(1_768_478_400, UTC)
    assert tx.account_keys[-1] == reference
    assert tx.lamport_delta(recipient) == 54_450_000
    assert tx.token_delta(recipient, TOKEN_MINT) == 5_445_000


@pytest.mark.asyncio
async def test_includes_lookup_table_addresses():
    reference, recipient, payer = new_address(), new_address(), new_address()
    detail = parsed_transaction(new_address(), recipient, payer)
    detail["meta"]["loadedAddresses"] = {"writable": [], "readonly": [reference]}
    stub = RpcStub(
        {
            "getSignaturesForAddress": [{"signature": "sig", "err": None}],
            "getTransaction": detail,
        }
    )

    tx = await make_client(stub).find_transaction_by_reference(reference)
    assert reference in tx.account_keys


@pytest.mark.asyncio
async def test_no_signatures_yet():
    stub = RpcStub({"getSignaturesForAddress": []})
    assert await make_client(stub).find_transaction_by_reference(new_address()) is None
    assert stub.methods() == ["getSignaturesForAddress"]


@pytest.mark.asyncio
async def test_only_failed_signatures():
    stub = RpcStub({"getSignaturesForAddress": [{"signature": "failed", "err": {"x": 1}}]})
    assert await make_client(stub).find_transaction_by_reference(new_address()) is None


@pytest.mark.asyncio
async def test_transaction_without_reference_is_ignored():
    stub = RpcStub(
        {
            "getSignaturesForAddress": [{"signature": "sig", "err": None}],
            "getTransaction": parsed_transaction(new_address(), new_address(), new_address()),
        }
    )
    assert await make_client(stub).find_transaction_by_reference(new_address()) is None


@pytest.mark.asyncio
async def test_transaction_not_yet_queryable():
    stub = RpcStub(
        {
            "getSignaturesForAddress": [{"signature": "sig", "err": None}],
            "getTransaction": None,
        }
    )
    assert await make_client(stub).find_transaction_by_reference(new_address()) is None


@pytest.mark.asyncio
async def test_malformed_transaction_raises_ledger_error():
    stub = RpcStub(
        {
            "getSignaturesForAddress": [{"signature": "sig", "err": None}],
            "getTransaction": {"meta": {}, "transaction": {}},
        }
    )
    with pytest.raises(LedgerError, match="Malformed"):
        await make_client(stub).find_transaction_by_reference(new_address())


@pytest.mark.asyncio
async def test_rpc_error_raises_ledger_error():
    stub = RpcStub({"getSignaturesForAddress": {"rpc_error": {"code": -32005, "message": "Node is behind"}}})
    with pytest.raises(LedgerError, match="getSignaturesForAddress"):
        await make_client(stub).find_transaction_by_reference(new_address())


@pytest.mark.asyncio
async def test_http_failure_raises_ledger_error():
    stub = RpcStub({"getLatestBlockhash": httpx.Response(502)})
    with pytest.raises(LedgerError):
        await make_client(stub).get_latest_blockhash()


@pytest.mark.asyncio
async def test_network_failure_raises_ledger_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    client = SolanaLedgerClient(
        RPC_URL, client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )
    with pytest.raises(LedgerError):
        await client.get_latest_blockhash()


@pytest.mark.asyncio
async def test_mint_decimals_are_cached():
    stub = RpcStub(
        {
            "getAccountInfo": {
                "value": {
                    "data": {
                        "parsed": {
                            "type": "mint",
                            "info": {"decimals": 6, "isInitialized": True},
                        }
                    }
                }
            }
        }
    )
    client = make_client(stub)

    assert await client.get_token_mint_decimals(TOKEN_MINT) == 6
    assert await client.get_token_mint_decimals(TOKEN_MINT) == 6
    assert stub.methods() == ["getAccountInfo"]


@pytest.mark.asyncio
async def test_missing_mint_raises_ledger_error():
    stub = RpcStub({"getAccountInfo": {"value": None}})
    with pytest.raises(LedgerError, match="not found"):
        await make_client(stub).get_token_mint_decimals(TOKEN_MINT)


@pytest.mark.asyncio
async def test_non_mint_account_raises_ledger_error():
    stub = RpcStub({"getAccountInfo": {"value": {"data": ["", "base64"]}}})
    with pytest.raises(LedgerError, match="not a token mint"):
        await make_client(stub).get_token_mint_decimals(TOKEN_MINT)


@pytest.mark.asyncio
async def test_associated_account_matches_spl_derivation():
    owner = new_address()
    client = make_client(RpcStub({}))

    ata = await client.resolve_associated_account(owner, TOKEN_MINT)

    assert ata == str(
        get_associated_token_address(Pubkey.from_string(owner), Pubkey.from_string(TOKEN_MINT))
    )


@pytest.mark.asyncio
async def test_associated_account_rejects_bad_owner():
    with pytest.raises(LedgerError):
        await make_client(RpcStub({})).resolve_associated_account("bad", TOKEN_MINT)
