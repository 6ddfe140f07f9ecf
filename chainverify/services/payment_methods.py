"""
Supported payment methods

Built once from Settings and keyed by upper-case symbol.
"""
from types import MappingProxyType
from typing import Mapping

from chainverify.config import Settings
from chainverify.schemas.payment import ChainFamily, PaymentMethodConfig


class UnsupportedPaymentMethodError(Exception):
    """Unknown asset symbol"""

    def __init__(self, symbol: str):
        self.symbol = symbol
        super().__init__(f"Unsupported cryptocurrency: {symbol}")


def build_payment_methods(settings: Settings) -> Mapping[str, PaymentMethodConfig]:
    """
    Build the read-only symbol -> config mapping

    Args:
        settings: application settings

    Returns:
        immutable mapping of PaymentMethodConfig
    """
    etherscan_key = settings.etherscan_api_key or None
    methods = [
        PaymentMethodConfig(
            symbol="BTC",
            name="Bitcoin",
            family=ChainFamily.UTXO,
            explorer_api_url=settings.blockstream_api_url,
            decimals=8,
            required_confirmations=3,
            deposit_address=settings.btc_deposit_address,
        ),
        PaymentMethodConfig(
            symbol="ETH",
            name="Ethereum",
            family=ChainFamily.ACCOUNT,
            explorer_api_url=settings.etherscan_api_url,
            api_key=etherscan_key,
            chain_id=settings.etherscan_chain_id,
            decimals=18,
            required_confirmations=12,
            deposit_address=settings.eth_deposit_address,
        ),
        PaymentMethodConfig(
            symbol="USDT",
            name="Tether USD",
            family=ChainFamily.ACCOUNT,
            explorer_api_url=settings.etherscan_api_url,
            api_key=etherscan_key,
            chain_id=settings.etherscan_chain_id,
            contract_address=settings.usdt_contract_address,
            decimals=6,
            required_confirmations=12,
            deposit_address=settings.usdt_deposit_address,
        ),
        PaymentMethodConfig(
            symbol="USDC",
            name="USD Coin",
            family=ChainFamily.ACCOUNT,
            explorer_api_url=settings.etherscan_api_url,
            api_key=etherscan_key,
            chain_id=settings.etherscan_chain_id,
            contract_address=settings.usdc_contract_address,
            decimals=6,
            required_confirmations=12,
            deposit_address=settings.usdc_deposit_address,
        ),
    ]
    return MappingProxyType({m.symbol: m for m in methods})


def get_payment_method(methods: Mapping[str, PaymentMethodConfig], symbol: str) -> PaymentMethodConfig:
    config = methods.get(symbol.upper())
    if config is None:
        raise UnsupportedPaymentMethodError(symbol)
    return config
