"""
Block explorer adapters

One adapter per chain family, each normalising explorer answers into a
VerificationResult. Adapters only read public chain state.
- UTXOAdapter: Blockstream-style REST API (Bitcoin)
- AccountAdapter: Etherscan-style JSON-RPC proxy (Ethereum and ERC-20 tokens)
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

import httpx

from chainverify.schemas.payment import ChainFamily, PaymentMethodConfig, VerificationResult
from chainverify.services.chain_validation import (
    ValidationOutcome,
    confirmation_depth,
    parse_hex_int,
    to_whole_units,
    validate_account_transaction,
    validate_utxo_outputs,
)
from chainverify.services.payment_methods import UnsupportedPaymentMethodError, get_payment_method

logger = logging.getLogger(__name__)

NATIVE_ETH_DECIMALS = 18


class ExplorerError(Exception):
    """Explorer unreachable, rate limited or answering garbage"""
    pass


class ChainAdapter(ABC):
    """Verification against one explorer for one asset"""

    def __init__(self, config: PaymentMethodConfig, client: httpx.AsyncClient):
        self.config = config
        self.client = client

    @abstractmethod
    async def verify(
        self,
        tx_id: str,
        expected_to_address: str,
        expected_amount: Optional[float] = None,
    ) -> VerificationResult:
        """
        Look up a transaction and judge it against the claim

        Raises:
            ExplorerError: transient explorer failure
        """

    def _not_found(self, raw: Any = None) -> VerificationResult:
        return VerificationResult(
            success=True,
            found=False,
            required_confirmations=self.config.required_confirmations,
            error="transaction not found",
            raw_response=raw,
        )

    def _build_result(
        self,
        outcome: ValidationOutcome,
        confirmations: int,
        block_height: Optional[int],
        block_hash: Optional[str],
        network_fee: Optional[float],
        raw: Any,
    ) -> VerificationResult:
        required = self.config.required_confirmations
        return VerificationResult(
            success=True,
            confirmed=outcome.valid is True and confirmations >= required,
            confirmation_count=confirmations,
            required_confirmations=required,
            found=True,
            valid=outcome.valid,
            block_height=block_height,
            block_hash=block_hash,
            network_fee=network_fee,
            actual_amount=outcome.actual_amount,
            error=outcome.reason,
            raw_response=raw,
        )


class UTXOAdapter(ChainAdapter):
    """Blockstream / Esplora compatible explorer"""

    async def _get(self, path: str) -> httpx.Response:
        url = f"{self.config.explorer_api_url.rstrip('/')}{path}"
        try:
            response = await self.client.get(url)
        except httpx.HTTPError as e:
            raise ExplorerError(f"{self.config.symbol} explorer request failed: {e}") from e
        if response.status_code == 429:
            raise ExplorerError(f"{self.config.symbol} explorer rate limited")
        return response

    async def verify(self, tx_id, expected_to_address, expected_amount=None):
        response = await self._get(f"/tx/{tx_id}")
        # esplora answers 400 for malformed ids and 404 for unknown ones
        if response.status_code in (400, 404):
            return self._not_found({"status_code": response.status_code, "body": response.text[:200]})
        if response.status_code != 200:
            raise ExplorerError(f"Failed to fetch transaction: {response.status_code}")

        try:
            tx = response.json()
        except ValueError as e:
            raise ExplorerError(f"Malformed transaction payload: {e}") from e

        status = tx.get("status") or {}
        block_height = status.get("block_height") if status.get("confirmed") else None
        confirmations = 0
        if block_height is not None:
            tip_response = await self._get("/blocks/tip/height")
            if tip_response.status_code != 200:
                raise ExplorerError(f"Failed to fetch tip height: {tip_response.status_code}")
            try:
                tip_height = int(tip_response.text.strip())
            except ValueError as e:
                raise ExplorerError(f"Malformed tip height: {tip_response.text[:50]}") from e
            confirmations = confirmation_depth(tip_height, block_height)

        outcome = validate_utxo_outputs(
            tx.get("vout", []),
            expected_to_address,
            expected_amount,
            decimals=self.config.decimals,
        )
        fee = tx.get("fee")
        return self._build_result(
            outcome,
            confirmations,
            block_height=block_height,
            block_hash=status.get("block_hash"),
            network_fee=to_whole_units(int(fee), self.config.decimals) if fee is not None else None,
            raw=tx,
        )


class AccountAdapter(ChainAdapter):
    """Etherscan compatible explorer (proxy module)"""

    async def _rpc(self, action: str, **params) -> Any:
        if not self.config.api_key:
            raise ExplorerError("Etherscan API key not configured")
        query = {"module": "proxy", "action": action, "apikey": self.config.api_key, **params}
        if self.config.chain_id is not None:
            query["chainid"] = self.config.chain_id
        try:
            response = await self.client.get(self.config.explorer_api_url, params=query)
        except httpx.HTTPError as e:
            raise ExplorerError(f"{self.config.symbol} explorer request failed: {e}") from e
        if response.status_code != 200:
            raise ExplorerError(f"{action} failed: HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            raise ExplorerError(f"Malformed {action} payload: {e}") from e

        if not isinstance(payload, dict):
            raise ExplorerError(f"Malformed {action} payload")
        if payload.get("error"):
            message = payload["error"].get("message") if isinstance(payload["error"], dict) else payload["error"]
            raise ExplorerError(f"Etherscan API error: {message}")
        # rate limit / bad key: {"status": "0", "message": "NOTOK", "result": "Max rate limit reached"}
        if payload.get("status") == "0":
            raise ExplorerError(f"Etherscan API error: {payload.get('result') or payload.get('message')}")
        return payload.get("result")

    async def verify(self, tx_id, expected_to_address, expected_amount=None):
        tx = await self._rpc("eth_getTransactionByHash", txhash=tx_id)
        if not tx:
            return self._not_found({"transaction": tx})
        if not isinstance(tx, dict):
            raise ExplorerError("Malformed transaction payload")

        receipt = await self._rpc("eth_getTransactionReceipt", txhash=tx_id)
        if receipt is not None and not isinstance(receipt, dict):
            raise ExplorerError("Malformed receipt payload")

        confirmations = 0
        block_height = parse_hex_int(tx.get("blockNumber"))
        if receipt:
            tip_height = parse_hex_int(await self._rpc("eth_blockNumber"))
            block_height = parse_hex_int(receipt.get("blockNumber"))
            confirmations = confirmation_depth(tip_height or 0, block_height)

        outcome = validate_account_transaction(
            tx,
            receipt,
            expected_to_address,
            expected_amount,
            decimals=self.config.decimals,
            contract_address=self.config.contract_address,
        )
        return self._build_result(
            outcome,
            confirmations,
            block_height=block_height,
            block_hash=(receipt or tx).get("blockHash"),
            network_fee=self._network_fee(tx, receipt),
            raw={"transaction": tx, "receipt": receipt},
        )

    @staticmethod
    def _network_fee(tx: Dict[str, Any], receipt: Optional[Dict[str, Any]]) -> Optional[float]:
        """gasUsed * effectiveGasPrice once mined, gas limit * gasPrice before"""
        if receipt:
            gas = parse_hex_int(receipt.get("gasUsed"))
            price = parse_hex_int(receipt.get("effectiveGasPrice") or tx.get("gasPrice"))
        else:
            gas = parse_hex_int(tx.get("gas"))
            price = parse_hex_int(tx.get("gasPrice"))
        if gas is None or price is None:
            return None
        return to_whole_units(gas * price, NATIVE_ETH_DECIMALS)


ADAPTER_CLASSES = {
    ChainFamily.UTXO: UTXOAdapter,
    ChainFamily.ACCOUNT: AccountAdapter,
}


class ChainVerificationService:
    """
    Symbol -> adapter dispatch

    Adapters are chosen once per payment method at construction time.

    Usage:
        service = ChainVerificationService(methods, timeout=15)
        result = await service.verify("BTC", tx_id, deposit_address, 0.01)
        await service.aclose()
    """

    def __init__(
        self,
        methods: Mapping[str, PaymentMethodConfig],
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        self.methods = methods
        self.timeout = timeout
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.adapters: Dict[str, ChainAdapter] = {
            symbol: ADAPTER_CLASSES[config.family](config, self.client)
            for symbol, config in methods.items()
        }

    def get_config(self, symbol: str) -> PaymentMethodConfig:
        return get_payment_method(self.methods, symbol)

    async def verify(
        self,
        symbol: str,
        tx_id: str,
        expected_to_address: str,
        expected_amount: Optional[float] = None,
    ) -> VerificationResult:
        """
        Verify a transaction; never raises for explorer trouble

        Args:
            symbol: asset symbol
            tx_id: transaction id / hash
            expected_to_address: deposit address the payment must reach
            expected_amount: whole-unit amount, None to skip the amount check

        Returns:
            VerificationResult; success=False for any transient failure
        """
        try:
            config = self.get_config(symbol)
        except UnsupportedPaymentMethodError as e:
            return VerificationResult.transient(0, str(e))

        adapter = self.adapters[config.symbol]
        try:
            return await asyncio.wait_for(
                adapter.verify(tx_id, expected_to_address, expected_amount),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"{symbol} verification of {tx_id} timed out after {self.timeout}s")
            return VerificationResult.transient(
                config.required_confirmations, f"explorer timed out after {self.timeout}s"
            )
        except ExplorerError as e:
            logger.warning(f"{symbol} verification of {tx_id} failed: {e}")
            return VerificationResult.transient(config.required_confirmations, str(e))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"{symbol} explorer returned an unexpected payload for {tx_id}: {e}")
            return VerificationResult.transient(
                config.required_confirmations, f"malformed explorer response: {e}"
            )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
