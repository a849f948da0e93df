from decimal import Decimal

import pytest

from analyzer.codec import (
    SCALES,
    EncryptedInputCodec,
    Field,
    StressScenario,
    decode,
    scale_value,
    shock_prices,
)
from analyzer.errors import EncodingError
from analyzer.handles import CiphertextHandle, EncryptedBatch, InputProof


def test_scale_value_truncates_toward_zero():
    assert scale_value("0.15", Field.VOLATILITY) == 150
    assert scale_value(0.1, Field.VOLATILITY) == 100
    assert scale_value("0.0159", Field.VOLATILITY) == 15
    assert scale_value("100.9", Field.BALANCE) == 100
    assert scale_value(Decimal("522.5"), Field.RISK_EXPOSURE) == 522_500


def test_scale_value_rejects_out_of_range():
    with pytest.raises(EncodingError):
        scale_value(-1, Field.BALANCE)
    with pytest.raises(EncodingError):
        scale_value(2**32, Field.PRICE)
    with pytest.raises(EncodingError):
        scale_value(5_000_000, Field.VOLATILITY)
    with pytest.raises(EncodingError):
        scale_value("not-a-number", Field.PRICE)
    with pytest.raises(EncodingError):
        scale_value(float("nan"), Field.PRICE)
    with pytest.raises(EncodingError):
        scale_value(True, Field.BALANCE)


def test_scale_value_accepts_uint32_max():
    assert scale_value(2**32 - 1, Field.PRICE) == 2**32 - 1


def test_decode_inverts_result_scales():
    assert SCALES[Field.VAR] == 100
    assert SCALES[Field.CVAR] == 10
    assert decode(Field.RISK_EXPOSURE, 522_500_000) == Decimal("522500")
    assert decode(Field.VAR, 150_000_000) == Decimal("1500000")
    assert decode(Field.CVAR, 15_000_005) == Decimal("1500000.5")


def test_shock_prices_per_scenario():
    prices = [50000, 3000]
    assert shock_prices(StressScenario.UNIFORM_DROP_30, prices) == [35000, 2100]
    assert shock_prices(StressScenario.UNIFORM_DROP_50, prices) == [25000, 1500]
    assert shock_prices(StressScenario.SINGLE_ASSET_DROP_50, prices) == [25000]
    assert shock_prices(StressScenario.UNIFORM_DROP_30, [7]) == [4]


def test_shock_prices_requires_prices():
    with pytest.raises(EncodingError):
        shock_prices(StressScenario.UNIFORM_DROP_30, [])


def test_encode_portfolio_interleaves_proofs(coprocessor, engine, alice):
    codec = EncryptedInputCodec(coprocessor, engine.contract_address, alice.address)
    balances, prices, proofs = codec.encode_portfolio([100, 50], [50000, 3000])

    assert len(balances) == 2
    assert len(prices) == 2
    assert proofs == [balances.proofs[0], prices.proofs[0], balances.proofs[1], prices.proofs[1]]
    for handle, proof in zip(balances.handles, balances.proofs):
        assert coprocessor.verify_input(handle, proof, engine.contract_address, alice.address) == handle


def test_encode_portfolio_rejects_length_mismatch(coprocessor, engine, alice):
    codec = EncryptedInputCodec(coprocessor, engine.contract_address, alice.address)
    with pytest.raises(EncodingError):
        codec.encode_portfolio([100, 50], [50000])


def test_encode_rejects_out_of_range_before_encrypting(coprocessor, engine, alice):
    codec = EncryptedInputCodec(coprocessor, engine.contract_address, alice.address)
    with pytest.raises(EncodingError):
        codec.encode(2**33, Field.BALANCE)


def test_handle_hex_round_trip_and_validation():
    handle = CiphertextHandle(b"\x01" * 32)
    assert CiphertextHandle.from_hex(handle.hex()) == handle
    assert handle.short() == "0x01010101"
    with pytest.raises(ValueError):
        CiphertextHandle(b"\x01" * 31)
    with pytest.raises(ValueError):
        CiphertextHandle.from_hex("0x" + "zz" * 32)


def test_encrypted_batch_requires_parallel_arrays():
    with pytest.raises(ValueError):
        EncryptedBatch(handles=(CiphertextHandle(b"\x02" * 32),), proofs=())
    batch = EncryptedBatch.of([(CiphertextHandle(b"\x02" * 32), InputProof(b"\x03"))])
    assert len(batch) == 1
