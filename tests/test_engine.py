from decimal import Decimal

import pytest

from analyzer.client import AnalyzerClient
from analyzer.codec import EncryptedInputCodec, Field, StressScenario
from analyzer.coprocessor import LocalCoprocessor
from analyzer.engine import THRESHOLD_ALERT_TYPE, ConfidentialComputeEngine, var_rank
from analyzer.errors import (
    AnalyzerError,
    AssetCountMismatch,
    InvalidAssetCount,
    NoPortfolioFound,
    ProofVerificationFailed,
    ThresholdsNotSet,
    UnknownScenario,
    UnsupportedProtocol,
)
from analyzer.events import PortfolioUpdated, StressTestCompleted, ThresholdAlert
from analyzer.handles import InputProof

from conftest import CHAIN_ID, CONTRACT, VERIFYING_CONTRACT, make_session

BALANCES = [100, 50]
PRICES = [50000, 3000]
VOLATILITIES = ["0.1", "0.15"]


def _decrypt_one(client, handle):
    return client.decrypt([handle])[handle.hex()]


def test_total_value_matches_plaintext(client):
    client.submit_portfolio(BALANCES, PRICES)
    assert client.total_value() == 5_150_000


def test_risk_exposure_is_scaled_by_one_thousand(client):
    client.submit_portfolio(BALANCES, PRICES)
    handle = client.calculate_risk_exposure(VOLATILITIES)
    assert _decrypt_one(client, handle) == 522_500_000
    assert client.risk_exposure(VOLATILITIES) == Decimal("522500")


def test_submit_portfolio_records_metadata_and_emits_event(engine, client, alice, clock):
    received = []
    engine.events.subscribe(received.append)

    record = client.submit_portfolio(BALANCES, PRICES)

    assert record.asset_count == 2
    assert engine.get_asset_count(alice.address) == 2
    assert engine.get_portfolio_metadata(alice.address) == (2, clock.now)
    assert received == [PortfolioUpdated(user=alice.address.lower(), timestamp=clock.now)]


def test_resubmission_replaces_portfolio(engine, client, alice, clock):
    client.submit_portfolio(BALANCES, PRICES)
    clock.advance(60)
    client.submit_portfolio([10], [7])

    assert engine.get_portfolio_metadata(alice.address) == (1, clock.now)
    assert client.total_value() == 70


@pytest.mark.parametrize("asset_count", [0, 11])
def test_invalid_asset_count_leaves_state_unchanged(engine, coprocessor, alice, asset_count):
    codec = EncryptedInputCodec(coprocessor, engine.contract_address, alice.address)
    values = [1] * max(asset_count, 1)
    balances, prices, proofs = codec.encode_portfolio(values, values)

    with pytest.raises(InvalidAssetCount):
        engine.submit_portfolio(alice.address, balances.handles, prices.handles, proofs, asset_count)
    assert engine.get_asset_count(alice.address) == 0


def test_array_length_mismatch_is_rejected(engine, coprocessor, alice):
    codec = EncryptedInputCodec(coprocessor, engine.contract_address, alice.address)
    balances, prices, proofs = codec.encode_portfolio([1, 2], [3, 4])

    with pytest.raises(AssetCountMismatch):
        engine.submit_portfolio(alice.address, balances.handles, prices.handles[:1], proofs, 2)
    with pytest.raises(AssetCountMismatch):
        engine.submit_portfolio(alice.address, balances.handles, prices.handles, proofs[:3], 2)


def test_bad_proof_keeps_previous_portfolio(engine, coprocessor, client, alice):
    original = client.submit_portfolio(BALANCES, PRICES)
    codec = EncryptedInputCodec(coprocessor, engine.contract_address, alice.address)
    balances, prices, proofs = codec.encode_portfolio([1, 2], [3, 4])
    proofs[3] = InputProof(b"\x00" * 32)

    with pytest.raises(ProofVerificationFailed):
        engine.submit_portfolio(alice.address, balances.handles, prices.handles, proofs, 2)

    assert engine.portfolios.get(alice.address) == original
    assert client.total_value() == 5_150_000


def test_inputs_encrypted_for_another_user_are_rejected(engine, coprocessor, alice, bob):
    codec = EncryptedInputCodec(coprocessor, engine.contract_address, bob.address)
    balances, prices, proofs = codec.encode_portfolio([1], [1])

    with pytest.raises(ProofVerificationFailed):
        engine.submit_portfolio(alice.address, balances.handles, prices.handles, proofs, 1)


def test_analytics_require_a_portfolio(engine, client, alice):
    with pytest.raises(NoPortfolioFound):
        engine.calculate_total_value(alice.address)
    with pytest.raises(NoPortfolioFound):
        client.calculate_risk_exposure(VOLATILITIES)
    with pytest.raises(NoPortfolioFound):
        client.run_stress_test(StressScenario.UNIFORM_DROP_30, PRICES)


def test_risk_exposure_requires_one_volatility_per_asset(client):
    client.submit_portfolio(BALANCES, PRICES)
    with pytest.raises(AssetCountMismatch):
        client.calculate_risk_exposure(["0.1"])


def test_check_thresholds_requires_thresholds(engine, client, alice):
    client.submit_portfolio(BALANCES, PRICES)
    with pytest.raises(ThresholdsNotSet):
        client.check_thresholds(5_150_000, 522_500)
    assert engine.get_alert_status(alice.address) is False
    assert engine.has_thresholds(alice.address) is False


def test_set_thresholds_requires_two_proofs(engine, coprocessor, alice):
    codec = EncryptedInputCodec(coprocessor, engine.contract_address, alice.address)
    batch = codec.encode_thresholds(1_000_000, 100_000)
    with pytest.raises(ProofVerificationFailed):
        engine.set_thresholds(alice.address, batch.handles[0], batch.handles[1], batch.proofs[:1])
    assert engine.has_thresholds(alice.address) is False


def test_threshold_alert_sets_and_clears(engine, client, alice):
    alerts = []
    engine.events.subscribe(lambda event: alerts.append(event) if isinstance(event, ThresholdAlert) else None)
    client.submit_portfolio(BALANCES, PRICES)

    client.set_thresholds(1_000_000, 100_000)
    assert engine.has_thresholds(alice.address) is True
    assert client.check_thresholds(5_150_000, 522_500) is True
    assert engine.get_alert_status(alice.address) is True
    assert alerts == [ThresholdAlert(user=alice.address.lower(), alert_type=THRESHOLD_ALERT_TYPE)]

    client.set_thresholds(10_000_000, 1_000_000)
    assert client.check_thresholds(5_150_000, 522_500) is False
    assert engine.get_alert_status(alice.address) is False
    assert len(alerts) == 1


def test_only_risk_threshold_exceeded_triggers(engine, client, alice):
    client.submit_portfolio(BALANCES, PRICES)
    client.set_thresholds(10_000_000, 100_000)
    assert client.check_thresholds(5_150_000, 522_500) is True


def test_var_rank_is_ceiling_of_ninety_percent():
    assert [var_rank(n) for n in (1, 2, 5, 9, 10)] == [1, 2, 5, 9, 9]


def test_uniform_drop_30_worked_example(engine, client):
    received = []
    engine.events.subscribe(received.append)
    client.submit_portfolio(BALANCES, PRICES)

    result = client.run_stress_test(StressScenario.UNIFORM_DROP_30, PRICES)
    values = client.decrypt(result.handles())

    assert values[result.stressed_value.hex()] == 3_605_000
    assert values[result.var.hex()] == 150_000_000
    assert values[result.cvar.hex()] == 15_000_000
    assert isinstance(received[-1], StressTestCompleted)
    assert received[-1].scenario == 0


def test_uniform_drop_50_report(client):
    client.submit_portfolio(BALANCES, PRICES)
    report = client.stress_test(StressScenario.UNIFORM_DROP_50, PRICES)

    assert report.stressed_value == 2_575_000
    assert report.value_at_risk == Decimal("2500000")
    assert report.conditional_value_at_risk == Decimal("2500000")


def test_single_asset_drop_only_shocks_first_asset(client):
    client.submit_portfolio(BALANCES, PRICES)
    report = client.stress_test(StressScenario.SINGLE_ASSET_DROP_50, PRICES)

    assert report.stressed_value == 2_650_000
    assert report.value_at_risk == Decimal("2500000")
    assert report.conditional_value_at_risk == Decimal("2500000")


def test_cvar_averages_the_tail(client):
    client.submit_portfolio([1] * 10, [100 * (i + 1) for i in range(10)])
    report = client.stress_test(StressScenario.UNIFORM_DROP_50, [100 * (i + 1) for i in range(10)])

    # Losses are 50, 100, ..., 500; rank 9 gives 450 and the tail is [450, 500].
    assert report.stressed_value == 2_750
    assert report.value_at_risk == Decimal("450")
    assert report.conditional_value_at_risk == Decimal("475")


def test_large_losses_keep_var_and_cvar_exact(client):
    # A 50,000,000 loss scaled by 100 no longer fits in 32 bits.
    client.submit_portfolio([1000], [100000])
    report = client.stress_test(StressScenario.UNIFORM_DROP_50, [100000])

    assert report.stressed_value == 50_000_000
    assert report.value_at_risk == Decimal("50000000")
    assert report.conditional_value_at_risk == Decimal("50000000")
    assert report.value_at_risk <= report.conditional_value_at_risk


def test_cvar_tail_sum_beyond_uint32_is_exact(client):
    balances = [1000] * 10
    prices = [4_000_000] * 10
    client.submit_portfolio(balances, prices)
    report = client.stress_test(StressScenario.UNIFORM_DROP_50, prices)

    # Each loss is 2,000,000,000; the two-loss tail sum exceeds 2**32.
    assert report.value_at_risk == Decimal("2000000000")
    assert report.conditional_value_at_risk == Decimal("2000000000")


def test_shock_above_baseline_counts_as_zero_loss(engine, coprocessor, client, alice):
    client.submit_portfolio(BALANCES, PRICES)
    codec = EncryptedInputCodec(coprocessor, engine.contract_address, alice.address)
    batch = codec.encode_many([60000, 3000], Field.PRICE)

    result = engine.run_stress_test(alice.address, StressScenario.UNIFORM_DROP_30, batch.handles, batch.proofs)
    values = client.decrypt(result.handles())

    assert values[result.stressed_value.hex()] == 6_150_000
    assert values[result.var.hex()] == 0
    assert values[result.cvar.hex()] == 0


def test_stress_test_validates_scenario_and_counts(engine, coprocessor, client, alice):
    client.submit_portfolio(BALANCES, PRICES)
    codec = EncryptedInputCodec(coprocessor, engine.contract_address, alice.address)
    batch = codec.encode_many([1, 1], Field.PRICE)

    with pytest.raises(UnknownScenario):
        engine.run_stress_test(alice.address, 7, batch.handles, batch.proofs)
    with pytest.raises(AssetCountMismatch):
        engine.run_stress_test(alice.address, StressScenario.SINGLE_ASSET_DROP_50, batch.handles, batch.proofs)
    with pytest.raises(AssetCountMismatch):
        engine.run_stress_test(alice.address, StressScenario.UNIFORM_DROP_30, batch.handles[:1], batch.proofs[:1])


def test_results_are_private_to_their_owner(engine, coprocessor, client, bob, clock):
    client.submit_portfolio(BALANCES, PRICES)
    handle = client.calculate_total_value()

    intruder = AnalyzerClient(engine, coprocessor, bob, session=make_session(coprocessor, clock))
    with pytest.raises(AnalyzerError):
        intruder.decrypt([handle])


def test_users_are_isolated(engine, coprocessor, client, bob, clock):
    client.submit_portfolio(BALANCES, PRICES)
    other = AnalyzerClient(engine, coprocessor, bob, session=make_session(coprocessor, clock))
    other.submit_portfolio([1], [2])

    assert client.total_value() == 5_150_000
    assert other.total_value() == 2


def test_engine_refuses_foreign_protocol():
    coprocessor = LocalCoprocessor(
        protocol_id=1,
        chain_id=CHAIN_ID,
        decryption_verifying_contract=VERIFYING_CONTRACT,
    )
    with pytest.raises(UnsupportedProtocol):
        ConfidentialComputeEngine(
            coprocessor,
            contract_address=CONTRACT,
            max_assets=10,
            confidential_protocol_id=10001,
        )
