"""Client-side encoding of plaintext inputs into encrypted batches.

This is the only place where cleartext portfolio figures exist. Every field
has a fixed-point scale that is part of the wire contract between encoder and
decoder; results come back from the engine at the scales listed here and must
be divided back out by the decrypting client.
"""
from __future__ import annotations

import math
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from enum import Enum, IntEnum
from typing import Dict, List, Sequence, Union

from .coprocessor import UINT32_MAX, Coprocessor
from .errors import EncodingError
from .handles import CiphertextHandle, EncryptedBatch, InputProof

Number = Union[int, float, str, Decimal]


class Field(str, Enum):
    BALANCE = "balance"
    PRICE = "price"
    VOLATILITY = "volatility"
    VALUE_THRESHOLD = "value_threshold"
    RISK_THRESHOLD = "risk_threshold"
    TOTAL_VALUE = "total_value"
    RISK_EXPOSURE = "risk_exposure"
    STRESSED_VALUE = "stressed_value"
    VAR = "var"
    CVAR = "cvar"


BALANCE_SCALE = 1
PRICE_SCALE = 1
VOLATILITY_SCALE = 1000
VALUE_THRESHOLD_SCALE = 1
RISK_THRESHOLD_SCALE = 1000
TOTAL_VALUE_SCALE = 1
RISK_EXPOSURE_SCALE = 1000
STRESSED_VALUE_SCALE = 1
VAR_SCALE = 100
CVAR_SCALE = 10

SCALES: Dict[Field, int] = {
    Field.BALANCE: BALANCE_SCALE,
    Field.PRICE: PRICE_SCALE,
    Field.VOLATILITY: VOLATILITY_SCALE,
    Field.VALUE_THRESHOLD: VALUE_THRESHOLD_SCALE,
    Field.RISK_THRESHOLD: RISK_THRESHOLD_SCALE,
    Field.TOTAL_VALUE: TOTAL_VALUE_SCALE,
    Field.RISK_EXPOSURE: RISK_EXPOSURE_SCALE,
    Field.STRESSED_VALUE: STRESSED_VALUE_SCALE,
    Field.VAR: VAR_SCALE,
    Field.CVAR: CVAR_SCALE,
}


class StressScenario(IntEnum):
    UNIFORM_DROP_30 = 0
    UNIFORM_DROP_50 = 1
    SINGLE_ASSET_DROP_50 = 2


SHOCK_RATIOS: Dict[StressScenario, Decimal] = {
    StressScenario.UNIFORM_DROP_30: Decimal("0.7"),
    StressScenario.UNIFORM_DROP_50: Decimal("0.5"),
    StressScenario.SINGLE_ASSET_DROP_50: Decimal("0.5"),
}


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, bool):
        raise EncodingError("booleans are not numeric inputs")
    if isinstance(value, float) and not math.isfinite(value):
        raise EncodingError(f"non-finite input: {value!r}")
    try:
        # str() keeps 0.15 as 0.15 instead of its binary expansion.
        result = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise EncodingError(f"not a number: {value!r}") from exc
    if not result.is_finite():
        raise EncodingError(f"non-finite input: {value!r}")
    return result


def scale_value(value: Number, field: Field) -> int:
    """Apply the field's fixed-point scale, truncating toward zero."""
    scaled = (_to_decimal(value) * SCALES[field]).to_integral_value(rounding=ROUND_DOWN)
    if scaled < 0 or scaled > UINT32_MAX:
        raise EncodingError(f"{field.value} {value} is outside the 32-bit unsigned range after scaling")
    return int(scaled)


def decode(field: Field, raw: int) -> Decimal:
    """Invert a field's scale on a decrypted result."""
    return Decimal(int(raw)) / Decimal(SCALES[field])


def shock_prices(scenario: StressScenario, prices: Sequence[Number]) -> List[int]:
    """Shocked prices a client submits for a scenario (floored to integers)."""
    scenario = StressScenario(scenario)
    if not prices:
        raise EncodingError("at least one price is required to derive shock prices")
    ratio = SHOCK_RATIOS[scenario]
    subject = prices[:1] if scenario is StressScenario.SINGLE_ASSET_DROP_50 else prices
    return [int((_to_decimal(price) * ratio).to_integral_value(rounding=ROUND_DOWN)) for price in subject]


class EncryptedInputCodec:
    """Turns plaintext numbers into `(handle, proof)` pairs for one contract and user."""

    def __init__(self, coprocessor: Coprocessor, contract_address: str, user_address: str) -> None:
        self.coprocessor = coprocessor
        self.contract_address = contract_address
        self.user_address = user_address

    def encode(self, value: Number, field: Field) -> tuple[CiphertextHandle, InputProof]:
        scaled = scale_value(value, field)
        return self.coprocessor.encrypt(scaled, self.contract_address, self.user_address)

    def encode_many(self, values: Sequence[Number], field: Field) -> EncryptedBatch:
        return EncryptedBatch.of([self.encode(value, field) for value in values])

    def encode_portfolio(self, balances: Sequence[Number], prices: Sequence[Number]) -> tuple[
        EncryptedBatch, EncryptedBatch, List[InputProof]
    ]:
        """Encode balances and prices, returning the interleaved proof list
        `[balance_0, price_0, balance_1, price_1, ...]` the engine expects."""
        if len(balances) != len(prices):
            raise EncodingError("balances and prices must have the same length")
        balance_batch = self.encode_many(balances, Field.BALANCE)
        price_batch = self.encode_many(prices, Field.PRICE)
        proofs: List[InputProof] = []
        for balance_proof, price_proof in zip(balance_batch.proofs, price_batch.proofs):
            proofs.append(balance_proof)
            proofs.append(price_proof)
        return balance_batch, price_batch, proofs

    def encode_thresholds(self, value_threshold: Number, risk_threshold: Number) -> EncryptedBatch:
        return EncryptedBatch.of(
            [
                self.encode(value_threshold, Field.VALUE_THRESHOLD),
                self.encode(risk_threshold, Field.RISK_THRESHOLD),
            ]
        )

    def encode_shock_prices(self, scenario: StressScenario, prices: Sequence[Number]) -> EncryptedBatch:
        return self.encode_many(shock_prices(scenario, prices), Field.PRICE)
