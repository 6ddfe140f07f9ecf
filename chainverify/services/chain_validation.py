"""
On-chain transaction validation

Pure checks shared by the chain adapters: recipient, amount tolerance and
confirmation depth. Raw integer amounts (satoshi, wei, token base units)
are converted to whole units before any comparison.
"""
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

AMOUNT_EPSILON = 1e-8

# keccak256("Transfer(address,address,uint256)")
ERC20_TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
# bytes4(keccak256("transfer(address,uint256)"))
ERC20_TRANSFER_SELECTOR = "0xa9059cbb"


@dataclass(frozen=True)
class TokenTransfer:
    to_address: str
    raw_amount: int


@dataclass(frozen=True)
class ValidationOutcome:
    """valid is None when the transaction cannot be judged yet"""
    valid: Optional[bool]
    actual_amount: Optional[float] = None
    reason: Optional[str] = None


def to_whole_units(raw_amount: int, decimals: int) -> float:
    return raw_amount / (10 ** decimals)


def amounts_match(actual: float, expected: float) -> bool:
    return abs(actual - expected) <= AMOUNT_EPSILON


def same_address(left: Optional[str], right: Optional[str]) -> bool:
    if not left or not right:
        return False
    return left.strip().lower() == right.strip().lower()


def confirmation_depth(tip_height: int, block_height: Optional[int]) -> int:
    """Blocks on top of and including the transaction's block; 0 if unmined"""
    if block_height is None:
        return 0
    return max(tip_height - block_height + 1, 0)


def parse_hex_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value)
    if text in ("", "0x"):
        return 0
    return int(text, 16)


# ========== UTXO family ==========

def validate_utxo_outputs(
    outputs: Iterable[Dict[str, Any]],
    expected_address: str,
    expected_amount: Optional[float],
    decimals: int = 8,
) -> ValidationOutcome:
    """
    Check that some output pays the expected address

    Args:
        outputs: explorer `vout` entries (`scriptpubkey_address`, `value` in base units)
        expected_address: deposit address
        expected_amount: whole-unit amount, or None to skip the amount check
        decimals: base-unit exponent of the asset

    Returns:
        ValidationOutcome with the amount paid to the address
    """
    paid_to_address: List[float] = []
    for output in outputs:
        if output.get("scriptpubkey_address") != expected_address:
            continue
        amount = to_whole_units(int(output.get("value", 0)), decimals)
        paid_to_address.append(amount)
        if expected_amount is None or amounts_match(amount, expected_amount):
            return ValidationOutcome(valid=True, actual_amount=amount)

    if not paid_to_address:
        return ValidationOutcome(valid=False, reason=f"no output pays {expected_address}")
    return ValidationOutcome(
        valid=False,
        actual_amount=sum(paid_to_address),
        reason=f"amount mismatch: expected {expected_amount}, got {paid_to_address}",
    )


# ========== Account family ==========

def decode_transfer_logs(logs: Iterable[Dict[str, Any]], contract_address: str) -> List[TokenTransfer]:
    """Transfer events emitted by the token contract"""
    transfers = []
    for log in logs or []:
        topics = log.get("topics") or []
        if not same_address(log.get("address"), contract_address):
            continue
        if len(topics) < 3 or str(topics[0]).lower() != ERC20_TRANSFER_TOPIC:
            continue
        transfers.append(TokenTransfer(
            to_address="0x" + str(topics[2])[-40:].lower(),
            raw_amount=parse_hex_int(log.get("data")) or 0,
        ))
    return transfers


def decode_transfer_input(input_data: Optional[str]) -> Optional[TokenTransfer]:
    """Decode `transfer(address,uint256)` calldata"""
    if not input_data or not input_data.lower().startswith(ERC20_TRANSFER_SELECTOR):
        return None
    args = input_data[len(ERC20_TRANSFER_SELECTOR):]
    if len(args) < 128:
        return None
    return TokenTransfer(
        to_address="0x" + args[24:64].lower(),
        raw_amount=int(args[64:128], 16),
    )


def _match_amount(actual: float, expected_amount: Optional[float]) -> ValidationOutcome:
    if expected_amount is not None and not amounts_match(actual, expected_amount):
        return ValidationOutcome(
            valid=False,
            actual_amount=actual,
            reason=f"amount mismatch: expected {expected_amount}, got {actual}",
        )
    return ValidationOutcome(valid=True, actual_amount=actual)


def validate_native_transfer(
    tx: Dict[str, Any],
    expected_address: str,
    expected_amount: Optional[float],
    decimals: int,
) -> ValidationOutcome:
    if not same_address(tx.get("to"), expected_address):
        return ValidationOutcome(valid=False, reason=f"recipient mismatch: {tx.get('to')}")
    value = to_whole_units(parse_hex_int(tx.get("value")) or 0, decimals)
    return _match_amount(value, expected_amount)


def validate_token_transfer(
    tx: Dict[str, Any],
    receipt: Optional[Dict[str, Any]],
    contract_address: str,
    expected_address: str,
    expected_amount: Optional[float],
    decimals: int,
) -> ValidationOutcome:
    """
    Validate an ERC-20 payment

    Mined transactions are judged only by the Transfer logs the token
    contract emitted, whoever the top-level call went to. Before a receipt
    exists a direct `transfer` call to the token is decoded from calldata;
    calls routed through a wallet or other contract stay
    undecided until mined.
    """
    if receipt is not None:
        transfers = decode_transfer_logs(receipt.get("logs", []), contract_address)
        if not transfers:
            return ValidationOutcome(valid=False, reason=f"no Transfer event emitted by {contract_address}")
    else:
        if not same_address(tx.get("to"), contract_address):
            return ValidationOutcome(valid=None, reason="awaiting receipt to decode transfer")
        decoded = decode_transfer_input(tx.get("input"))
        if decoded is None:
            return ValidationOutcome(valid=None, reason="awaiting receipt to decode transfer")
        transfers = [decoded]

    to_recipient = [t for t in transfers if same_address(t.to_address, expected_address)]
    if not to_recipient:
        return ValidationOutcome(valid=False, reason=f"no transfer to {expected_address}")

    outcome = None
    for transfer in to_recipient:
        outcome = _match_amount(to_whole_units(transfer.raw_amount, decimals), expected_amount)
        if outcome.valid:
            return outcome
    return outcome


def validate_account_transaction(
    tx: Dict[str, Any],
    receipt: Optional[Dict[str, Any]],
    expected_address: str,
    expected_amount: Optional[float],
    decimals: int,
    contract_address: Optional[str] = None,
) -> ValidationOutcome:
    if receipt is not None and parse_hex_int(receipt.get("status")) == 0:
        return ValidationOutcome(valid=False, reason="transaction reverted")
    if contract_address:
        return validate_token_transfer(
            tx, receipt, contract_address, expected_address, expected_amount, decimals
        )
    return validate_native_transfer(tx, expected_address, expected_amount, decimals)
