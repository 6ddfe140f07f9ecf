import asyncio

import httpx
import pytest

from chainverify.schemas.payment import ChainFamily, PaymentMethodConfig
from chainverify.services.chain_adapters import ChainVerificationService
from chainverify.services.chain_validation import ERC20_TRANSFER_TOPIC

BTC_ADDRESS = "bc1qdeposit"
ETH_ADDRESS = "0x1111111111111111111111111111111111111111"
TOKEN = "0xdac17f958d2ee523a2206206994597c13d831ec7"

BTC = PaymentMethodConfig(
    symbol="BTC",
    name="Bitcoin",
    family=ChainFamily.UTXO,
    explorer_api_url="https://esplora.test/api",
    decimals=8,
    required_confirmations=3,
    deposit_address=BTC_ADDRESS,
)
ETH = PaymentMethodConfig(
    symbol="ETH",
    name="Ethereum",
    family=ChainFamily.ACCOUNT,
    explorer_api_url="https://etherscan.test/v2/api",
    api_key="key",
    chain_id=1,
    decimals=18,
    required_confirmations=12,
    deposit_address=ETH_ADDRESS,
)
USDT = PaymentMethodConfig(
    symbol="USDT",
    name="Tether USD",
    family=ChainFamily.ACCOUNT,
    explorer_api_url="https://etherscan.test/v2/api",
    api_key="key",
    chain_id=1,
    contract_address=TOKEN,
    decimals=6,
    required_confirmations=12,
    deposit_address=ETH_ADDRESS,
)
METHODS = {"BTC": BTC, "ETH": ETH, "USDT": USDT}


def btc_tx(address=BTC_ADDRESS, value=1_000_000, block_height=100):
    status = {"confirmed": block_height is not None}
    if block_height is not None:
        status.update(block_height=block_height, block_hash="00000000abc")
    return {
        "txid": "btc-tx",
        "fee": 1500,
        "status": status,
        "vout": [{"scriptpubkey_address": address, "value": value}],
    }


def esplora(tx, tip=102, tx_status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/blocks/tip/height"):
            return httpx.Response(200, text=str(tip))
        if tx_status != 200:
            return httpx.Response(tx_status, text="Transaction not found")
        return httpx.Response(200, json=tx)
    return handler


def etherscan(tx, receipt, tip="0x20"):
    def handler(request: httpx.Request) -> httpx.Response:
        action = request.url.params["action"]
        result = {
            "eth_getTransactionByHash": tx,
            "eth_getTransactionReceipt": receipt,
            "eth_blockNumber": tip,
        }[action]
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})
    return handler


def service_for(handler, timeout=5.0) -> ChainVerificationService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ChainVerificationService(METHODS, client=client, timeout=timeout)


@pytest.mark.anyio
async def test_unconfirmed_utxo_transaction_is_found_but_not_confirmed():
    service = service_for(esplora(btc_tx(block_height=None)))

    result = await service.verify("BTC", "btc-tx", BTC_ADDRESS, 0.01)

    assert result.success is True
    assert result.found is True
    assert result.valid is True
    assert result.confirmed is False
    assert result.confirmation_count == 0
    assert result.required_confirmations == 3


@pytest.mark.anyio
async def test_deep_enough_utxo_transaction_is_confirmed():
    service = service_for(esplora(btc_tx(block_height=100), tip=104))

    result = await service.verify("btc", "btc-tx", BTC_ADDRESS, 0.01)

    assert result.confirmed is True
    assert result.confirmation_count == 5
    assert result.block_height == 100
    assert result.network_fee == 0.000015


@pytest.mark.anyio
async def test_wrong_recipient_is_a_mismatch_at_any_depth():
    service = service_for(esplora(btc_tx(address="bc1qsomeoneelse", block_height=100), tip=200))

    result = await service.verify("BTC", "btc-tx", BTC_ADDRESS, 0.01)

    assert result.confirmed is False
    assert result.is_mismatch is True


@pytest.mark.anyio
async def test_unknown_utxo_transaction_is_not_found():
    service = service_for(esplora(None, tx_status=404))

    result = await service.verify("BTC", "missing", BTC_ADDRESS, 0.01)

    assert result.success is True
    assert result.found is False


@pytest.mark.anyio
async def test_rate_limit_is_transient():
    service = service_for(esplora(None, tx_status=429))

    result = await service.verify("BTC", "btc-tx", BTC_ADDRESS, 0.01)

    assert result.success is False
    assert "rate limited" in result.error


@pytest.mark.anyio
async def test_transport_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = await service_for(handler).verify("BTC", "btc-tx", BTC_ADDRESS, 0.01)

    assert result.success is False


@pytest.mark.anyio
async def test_timeout_is_transient():
    class SlowAdapter:
        async def verify(self, *args):
            await asyncio.sleep(1)

    service = service_for(esplora(btc_tx()), timeout=0.01)
    service.adapters["BTC"] = SlowAdapter()

    result = await service.verify("BTC", "btc-tx", BTC_ADDRESS, 0.01)

    assert result.success is False
    assert "timed out" in result.error


@pytest.mark.anyio
async def test_unsupported_symbol_is_transient():
    result = await service_for(esplora(btc_tx())).verify("DOGE", "tx", "addr")

    assert result.success is False
    assert "Unsupported" in result.error


@pytest.mark.anyio
async def test_verification_is_a_pure_query():
    service = service_for(esplora(btc_tx(block_height=100), tip=101))

    first = await service.verify("BTC", "btc-tx", BTC_ADDRESS, 0.01)
    second = await service.verify("BTC", "btc-tx", BTC_ADDRESS, 0.01)

    assert (first.confirmed, first.confirmation_count) == (second.confirmed, second.confirmation_count)


@pytest.mark.anyio
async def test_native_eth_transfer_confirmed():
    tx = {"hash": "0xabc", "to": ETH_ADDRESS, "value": hex(10 ** 17), "blockNumber": "0x10", "gasPrice": "0x1"}
    receipt = {"status": "0x1", "blockNumber": "0x10", "blockHash": "0xblock", "gasUsed": hex(21000),
               "effectiveGasPrice": hex(10 ** 9), "logs": []}
    service = service_for(etherscan(tx, receipt, tip="0x1f"))

    result = await service.verify("ETH", "0xabc", ETH_ADDRESS, 0.1)

    assert result.confirmed is True
    assert result.confirmation_count == 16
    assert result.network_fee == pytest.approx(21000 * 10 ** 9 / 10 ** 18)


@pytest.mark.anyio
async def test_missing_eth_transaction_is_not_found():
    service = service_for(etherscan(None, None))

    result = await service.verify("ETH", "0xmissing", ETH_ADDRESS, 0.1)

    assert result.success is True
    assert result.found is False


@pytest.mark.anyio
async def test_reverted_eth_transaction_is_a_mismatch():
    tx = {"hash": "0xabc", "to": ETH_ADDRESS, "value": hex(10 ** 17), "blockNumber": "0x10"}
    receipt = {"status": "0x0", "blockNumber": "0x10", "gasUsed": "0x1", "effectiveGasPrice": "0x1", "logs": []}

    result = await service_for(etherscan(tx, receipt)).verify("ETH", "0xabc", ETH_ADDRESS, 0.1)

    assert result.is_mismatch is True


@pytest.mark.anyio
async def test_etherscan_rate_limit_is_transient():
    def handler(request):
        return httpx.Response(200, json={"status": "0", "message": "NOTOK", "result": "Max rate limit reached"})

    result = await service_for(handler).verify("ETH", "0xabc", ETH_ADDRESS, 0.1)

    assert result.success is False
    assert "Max rate limit" in result.error


@pytest.mark.anyio
async def test_erc20_transfer_read_from_logs():
    recipient_topic = "0x" + "0" * 24 + ETH_ADDRESS[2:]
    tx = {"hash": "0xabc", "to": TOKEN, "value": "0x0", "input": "0x", "blockNumber": "0x10"}
    receipt = {
        "status": "0x1",
        "blockNumber": "0x10",
        "gasUsed": "0x1",
        "effectiveGasPrice": "0x1",
        "logs": [{"address": TOKEN, "topics": [ERC20_TRANSFER_TOPIC, recipient_topic, recipient_topic],
                  "data": hex(25_000_000)}],
    }

    result = await service_for(etherscan(tx, receipt, tip="0x30")).verify("USDT", "0xabc", ETH_ADDRESS, 25.0)

    assert result.valid is True
    assert result.actual_amount == 25.0
    assert result.confirmed is True


@pytest.mark.anyio
async def test_etherscan_requests_name_the_chain():
    seen = []
    tx = {"hash": "0xabc", "to": ETH_ADDRESS, "value": hex(10 ** 17), "blockNumber": "0x10"}
    receipt = {"status": "0x1", "blockNumber": "0x10", "gasUsed": "0x1", "effectiveGasPrice": "0x1", "logs": []}
    answer = etherscan(tx, receipt)

    def handler(request):
        seen.append(dict(request.url.params))
        return answer(request)

    await service_for(handler).verify("ETH", "0xabc", ETH_ADDRESS, 0.1)

    assert seen
    assert all(params["chainid"] == "1" for params in seen)
    assert all(params["module"] == "proxy" for params in seen)


@pytest.mark.anyio
async def test_erc20_transfer_sent_through_wallet_contract():
    wallet = "0x9999999999999999999999999999999999999999"
    wallet_topic = "0x" + "0" * 24 + wallet[2:]
    recipient_topic = "0x" + "0" * 24 + ETH_ADDRESS[2:]
    tx = {"hash": "0xabc", "to": wallet, "value": "0x0", "input": "0x6a761202", "blockNumber": "0x10"}
    receipt = {
        "status": "0x1",
        "blockNumber": "0x10",
        "gasUsed": "0x1",
        "effectiveGasPrice": "0x1",
        "logs": [{"address": TOKEN, "topics": [ERC20_TRANSFER_TOPIC, wallet_topic, recipient_topic],
                  "data": hex(25_000_000)}],
    }

    result = await service_for(etherscan(tx, receipt, tip="0x30")).verify("USDT", "0xabc", ETH_ADDRESS, 25.0)

    assert result.valid is True
    assert result.is_mismatch is False
    assert result.confirmed is True
