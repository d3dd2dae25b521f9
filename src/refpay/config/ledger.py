from pydantic import BaseModel, HttpUrl


class LedgerSettings(BaseModel):
    """Solana RPC configuration."""

    rpc_url: HttpUrl = "https://api.devnet.solana.com"  # type: ignore
    network: str = "devnet"  # "mainnet-beta", "devnet", "testnet"
    token_mint: str = (
        "Gh9ZwEmdLJ8DscKNTkTqPbNwLNNBjuSzaG9Vp2KGtKJr"  # Devnet USDC
    )

    # Commitment used when searching for reference transactions
    commitment: str = "confirmed"

    # Every RPC call is bounded; failures are retried on the next tick only
    rpc_timeout_seconds: float = 10.0
    signature_search_limit: int = 1000
