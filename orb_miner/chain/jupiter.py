"""
Jupiter Aggregator client.

Two jobs:
- price oracle for ORB, derived from quotes (the lite API has no price endpoint)
- ORB -> SOL swaps used to top up the automation escrow
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

import requests

logger = logging.getLogger(__name__)

SOLANA_TOKENS = {
    "SOL": "So11111111111111111111111111111111111111112",
    "USDC": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
}

TOKEN_DECIMALS = 9
USDC_DECIMALS = 6


@dataclass(frozen=True)
class PriceQuote:
    price_in_native: float
    price_in_usd: float

    @property
    def available(self) -> bool:
        return self.price_in_native > 0


UNAVAILABLE = PriceQuote(price_in_native=0.0, price_in_usd=0.0)


@dataclass
class SwapResult:
    success: bool
    signature: Optional[str] = None
    native_received: float = 0.0
    fee: float = 0.0
    error: Optional[str] = None


class JupiterClient:
    """
    Quotes, prices and swaps through Jupiter.

    get_price() never raises: a failed lookup returns the zero sentinel and the
    profitability check treats that as "not profitable".
    """

    def __init__(self, config, chain=None, clock=time.monotonic):
        self.config = config
        self.chain = chain
        self.clock = clock
        self.api_url = config.network.jupiter_api_url.rstrip("/")
        self.token_mint = config.network.token_mint
        self.timeout = config.network.request_timeout
        self.session = requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
        })
        self._price_cache: Optional[PriceQuote] = None
        self._cache_timestamp = 0.0
        self._cache_ttl = config.network.price_cache_ttl

    def get_quote(self, input_mint: str, output_mint: str, amount: int,
                  slippage_bps: int = 50) -> Optional[dict]:
        """
        Get a quote for a swap.

        Args:
            input_mint: Input token mint address
            output_mint: Output token mint address
            amount: Amount in smallest unit
            slippage_bps: Slippage in basis points
        """
        try:
            response = self.session.get(
                f"{self.api_url}/quote",
                params={
                    "inputMint": input_mint,
                    "outputMint": output_mint,
                    "amount": amount,
                    "slippageBps": slippage_bps,
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Jupiter quote %s -> %s failed: %s", input_mint[:6], output_mint[:6], e)
            return None

    def get_price(self) -> PriceQuote:
        """ORB price in SOL and USD, cached for price_cache_ttl seconds."""
        now = self.clock()
        if self._price_cache is not None and now - self._cache_timestamp < self._cache_ttl:
            return self._price_cache

        one_token = 10 ** TOKEN_DECIMALS
        native_quote = self.get_quote(self.token_mint, SOLANA_TOKENS["SOL"], one_token)
        if not native_quote:
            logger.error("ORB price unavailable, treating as zero")
            return UNAVAILABLE

        try:
            price_in_native = int(native_quote["outAmount"]) / 10 ** TOKEN_DECIMALS
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Malformed Jupiter quote: %s", e)
            return UNAVAILABLE

        price_in_usd = 0.0
        usd_quote = self.get_quote(self.token_mint, SOLANA_TOKENS["USDC"], one_token)
        if usd_quote:
            try:
                price_in_usd = int(usd_quote["outAmount"]) / 10 ** USDC_DECIMALS
            except (KeyError, TypeError, ValueError):
                price_in_usd = 0.0

        quote = PriceQuote(price_in_native=price_in_native, price_in_usd=price_in_usd)
        self._price_cache = quote
        self._cache_timestamp = now
        return quote

    def swap_token_to_native(self, amount: float, slippage_bps: Optional[int] = None) -> SwapResult:
        """Swap `amount` ORB to SOL. The chain adapter signs and sends the transaction."""
        if self.chain is None:
            return SwapResult(success=False, error="No chain adapter to sign the swap")

        slippage = slippage_bps if slippage_bps is not None else self.config.refund.slippage_bps
        raw_amount = int(amount * 10 ** TOKEN_DECIMALS)
        quote = self.get_quote(self.token_mint, SOLANA_TOKENS["SOL"], raw_amount, slippage)
        if not quote:
            return SwapResult(success=False, error="No quote")

        expected_native = int(quote.get("outAmount", 0)) / 10 ** TOKEN_DECIMALS
        logger.info("Quote: %.2f ORB -> %.6f SOL (impact: %s%%)",
                    amount, expected_native, quote.get("priceImpactPct", "?"))

        try:
            response = self.session.post(
                f"{self.api_url}/swap",
                json={
                    "quoteResponse": quote,
                    "userPublicKey": self.chain.owner,
                    "wrapAndUnwrapSol": True,
                    "dynamicComputeUnitLimit": True,
                    "prioritizationFeeLamports": "auto",
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()["swapTransaction"]
        except (requests.RequestException, ValueError, KeyError) as e:
            logger.error("Jupiter swap request failed: %s", e)
            return SwapResult(success=False, error=str(e))

        try:
            receipt = self.chain.send_serialized(payload, "Swap")
        except Exception as e:
            logger.error("Swap transaction failed: %s", e)
            return SwapResult(success=False, error=str(e))

        return SwapResult(
            success=True,
            signature=receipt.signature,
            native_received=expected_native,
            fee=receipt.fee or 0.0,
        )
